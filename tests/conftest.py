import httpx
import pytest

from clipdrop.config.settings import config
from clipdrop.core.state import ToolInfo, state
from clipdrop.main import app


@pytest.fixture(autouse=True)
def relaxed_security(monkeypatch):
    """Tests point media URLs at fake hosts; no DNS lookups"""
    monkeypatch.setattr(config.security, "enable_ssrf_protection", False)


def _swap_tools(tools):
    saved = dict(state.tools)
    state.tools.clear()
    state.tools.update({tool.name: tool for tool in tools})
    return saved


@pytest.fixture
def tools_available():
    """Pretend both binaries were probed successfully"""
    saved = _swap_tools([
        ToolInfo(name="ffmpeg", path="/usr/bin/ffmpeg", version="ffmpeg version 6.1"),
        ToolInfo(name="yt-dlp", path="/usr/bin/yt-dlp", version="2024.08.06"),
    ])
    yield state.tools
    _swap_tools(saved.values())


@pytest.fixture
def tools_missing():
    saved = _swap_tools([ToolInfo(name="ffmpeg"), ToolInfo(name="yt-dlp")])
    yield state.tools
    _swap_tools(saved.values())


@pytest.fixture
async def client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
