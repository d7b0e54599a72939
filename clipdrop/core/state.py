import asyncio
import logging
import shutil
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx

from clipdrop.config.settings import config
from clipdrop.core.errors import ApiError, ErrorCode

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 10.0

VERSION_ARGS = {
    "ffmpeg": "-version",
    "yt-dlp": "--version",
}


@dataclass
class ToolInfo:
    """Result of probing one external binary"""
    name: str
    path: Optional[str] = None
    version: str = "unknown"

    @property
    def available(self) -> bool:
        return self.path is not None


@dataclass
class RuntimeState:
    """Centralized runtime state"""
    tools: Dict[str, ToolInfo] = field(default_factory=dict)
    js_runtime: Optional[str] = None
    http_client: Optional[httpx.AsyncClient] = None

    @property
    def ffmpeg_version(self) -> str:
        return self.tools.get("ffmpeg", ToolInfo("ffmpeg")).version

    @property
    def ytdlp_version(self) -> str:
        return self.tools.get("yt-dlp", ToolInfo("yt-dlp")).version


state = RuntimeState()


def _binaries() -> Dict[str, str]:
    return {
        "ffmpeg": config.transcoder.binary,
        "yt-dlp": config.ytdlp.binary,
    }


async def _probe_one(name: str, binary: str) -> ToolInfo:
    path = shutil.which(binary)
    if not path:
        logger.warning(f"{name} not found (looked for '{binary}')")
        return ToolInfo(name=name)

    # Still usable when the version run fails; only the version string is missing
    info = ToolInfo(name=name, path=path)
    try:
        process = await asyncio.create_subprocess_exec(
            path, VERSION_ARGS[name],
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            stdin=asyncio.subprocess.DEVNULL
        )
    except OSError as e:
        logger.warning(f"Could not read {name} version: {e}")
        return info

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"{name} {VERSION_ARGS[name]} did not answer within {PROBE_TIMEOUT_SECONDS}s")
        if process.returncode is None:
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()
        return info

    lines = stdout.decode(errors="ignore").strip().splitlines()
    if lines:
        info.version = lines[0].strip()
    return info


async def probe_tools() -> RuntimeState:
    """Probe every external binary once and cache the result"""
    for name, binary in _binaries().items():
        state.tools[name] = await _probe_one(name, binary)
        if state.tools[name].available:
            logger.info(f"{name} available: {state.tools[name].version}")
    state.js_runtime = config.ytdlp.js_runtime
    return state


def invalidate_tools() -> None:
    """Forget cached probe results; the next require_tool() probes again"""
    state.tools.clear()


async def require_tool(name: str) -> ToolInfo:
    """Return the cached probe for a binary or fail with tool_unavailable"""
    info = state.tools.get(name)
    if info is None:
        info = await _probe_one(name, _binaries()[name])
        state.tools[name] = info
    if not info.available:
        raise ApiError(ErrorCode.TOOL_UNAVAILABLE, f"{name} is not installed", tool=name)
    return info
