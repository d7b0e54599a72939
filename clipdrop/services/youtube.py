import asyncio
import json
import logging
from typing import Any, Dict, Optional

from clipdrop.core.errors import ApiError, ErrorCode
from clipdrop.core.state import require_tool
from clipdrop.config.settings import config
from clipdrop.models.internal import OutputFormat, ResolvedMedia, YouTubeSource
from clipdrop.services.format import FormatDecision
from clipdrop.services.platform import canonical_watch_url
from clipdrop.services.ytdlp import YTDLPCommandBuilder, SubprocessExecutor

logger = logging.getLogger(__name__)

# Lower-cased stderr fragments, checked in order
STDERR_RULES = (
    (ErrorCode.BOT_CHALLENGE, (
        "sign in to confirm you're not a bot",
        "sign in to confirm you’re not a bot",
        "confirm you are not a robot",
        "captcha",
    )),
    (ErrorCode.MEDIA_UNAVAILABLE, (
        "requested format is not available",
    )),
    (ErrorCode.VIDEO_UNAVAILABLE, (
        "private video",
        "video unavailable",
        "this video has been removed",
        "this video is not available",
        "does not exist",
        "members-only",
        "sign in to confirm your age",
    )),
)


def classify_failure(stderr: str) -> ErrorCode:
    """Map a failed yt-dlp run to an error code from its stderr"""
    lowered = stderr.lower()
    for code, fragments in STDERR_RULES:
        if any(fragment in lowered for fragment in fragments):
            return code
    return ErrorCode.UPSTREAM_UNAVAILABLE


class YouTubeResolver:
    """
    Identifier-resolution variant.

    Stream URLs are short-lived, so the convert phase only proves the video
    resolves for the requested format; the download phase calls
    extract_streams() again with the identifier carried by the token.
    """

    def __init__(self, executor: Optional[SubprocessExecutor] = None):
        self.executor = executor or SubprocessExecutor()

    async def extract_streams(self, video_id: str, output_format: OutputFormat) -> Dict[str, Any]:
        """Run yt-dlp for the canonical watch URL and return its JSON document"""
        await require_tool("yt-dlp")

        cmd = YTDLPCommandBuilder.build_info_command(
            canonical_watch_url(video_id),
            FormatDecision.decide(output_format),
        )

        try:
            result = await self.executor.run(cmd, timeout=config.ytdlp.info_timeout_seconds)
        except asyncio.TimeoutError:
            raise ApiError(ErrorCode.UPSTREAM_TIMEOUT, f"yt-dlp timed out for {video_id}")
        except OSError as e:
            raise ApiError(ErrorCode.TOOL_UNAVAILABLE, f"yt-dlp could not start: {e}", tool="yt-dlp")

        if result.returncode != 0:
            error_msg = result.stderr.decode(errors="ignore").strip()
            code = classify_failure(error_msg)
            raise ApiError(code, f"yt-dlp exit {result.returncode}: {error_msg[-300:]}", format=output_format.value)

        stdout = result.stdout.decode(errors="ignore").strip()
        if not stdout:
            raise ApiError(ErrorCode.UPSTREAM_BAD_RESPONSE, "yt-dlp printed nothing")

        try:
            # --dump-json prints one document per line; --no-playlist keeps it to one
            info = json.loads(stdout.splitlines()[0])
        except json.JSONDecodeError:
            raise ApiError(ErrorCode.UPSTREAM_BAD_RESPONSE, "yt-dlp output is not JSON")

        if not isinstance(info, dict):
            raise ApiError(ErrorCode.UPSTREAM_BAD_RESPONSE, "yt-dlp output is not an object")
        return info

    async def resolve(self, video_id: str, output_format: OutputFormat) -> ResolvedMedia:
        info = await self.extract_streams(video_id, output_format)

        duration = info.get("duration")
        return ResolvedMedia(
            title=(info.get("title") or "").strip() or "YouTube Video",
            author=(info.get("uploader") or info.get("channel") or "").strip() or "YouTube creator",
            cover=info.get("thumbnail"),
            duration=duration if isinstance(duration, (int, float)) else None,
            media_id=video_id,
            source=YouTubeSource(format=output_format, video_id=video_id),
        )
