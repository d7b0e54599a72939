from datetime import datetime, timezone

from fastapi import APIRouter, Request

from clipdrop.config.settings import config
from clipdrop.core.state import probe_tools, state
from clipdrop.i18n import i18n
from clipdrop.utils.locale import get_locale

router = APIRouter()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/")
async def root(request: Request):
    """Root endpoint"""
    locale = get_locale(request.headers.get("accept-language"))
    return {
        "status": i18n.get("response.status_running", locale=locale),
        "service": config.api.title,
        "version": config.api.version,
    }


@router.get("/api/health")
async def health_check():
    """Lightweight health check"""
    return {
        "status": i18n.get("response.health_ok"),
        "timestamp": _timestamp(),
    }


@router.get("/api/health/full")
async def health_check_full():
    """Detailed health check"""
    if not state.tools:
        await probe_tools()

    return {
        "status": i18n.get("response.health_ok"),
        "timestamp": _timestamp(),
        "tools": {
            name: {
                "available": info.available,
                "path": info.path,
                "version": info.version,
            }
            for name, info in state.tools.items()
        },
        "ffmpeg_version": state.ffmpeg_version,
        "ytdlp_version": state.ytdlp_version,
        "js_runtime": state.js_runtime,
    }
