import functools
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import Response

from clipdrop.config.settings import config
from clipdrop.core.logging import log_info, log_warning
from clipdrop.core.state import require_tool
from clipdrop.i18n import i18n
from clipdrop.infra.http import get_http_client
from clipdrop.models.internal import OutputFormat, SourceToken, TikTokSource, YouTubeSource
from clipdrop.services.ffmpeg import FFmpegCommandBuilder
from clipdrop.services.format import FormatDecision
from clipdrop.services.selector import StreamSelector
from clipdrop.services.stream import (
    ProxyService,
    StreamService,
    TranscodeJob,
    TranscodeState,
    build_response,
)
from clipdrop.services.token import decode_source
from clipdrop.services.youtube import YouTubeResolver
from clipdrop.utils.filename import content_disposition, sanitize_filename
from clipdrop.utils.locale import get_locale

router = APIRouter()


class DownloadService:
    """Download phase: token in, media bytes out"""

    def __init__(self, youtube: Optional[YouTubeResolver] = None):
        self.youtube = youtube or YouTubeResolver()

    async def download(self, token: SourceToken, stem: str, transcode: bool, request: Request) -> Response:
        locale = get_locale(request.headers.get("accept-language"))
        _ = functools.partial(i18n.get, locale=locale)

        meta = FormatDecision.get_metadata(token.format)
        disposition = content_disposition(stem, meta.ext)
        label = f"{getattr(request.state, 'request_id', '-')}:{token.platform}"

        if isinstance(token, TikTokSource) and not transcode:
            log_info(request, _("log.starting_stream", mode="proxy", platform=token.platform, format=meta.ext))
            body, cleanup, upstream_type = await ProxyService.open(
                get_http_client(),
                token.media_url,
                headers={
                    "User-Agent": config.tiktok.user_agent,
                    "Accept-Encoding": "identity",
                },
                label=label,
            )
            if upstream_type and not upstream_type.startswith(meta.media_type.split("/")[0]):
                log_warning(request, f"Upstream content type {upstream_type} proxied as {meta.media_type}")
            return build_response(body, cleanup, meta.media_type, disposition)

        await require_tool("ffmpeg")
        job = TranscodeJob(label=label)

        if isinstance(token, YouTubeSource):
            # Stream URLs expire; resolve them again for this request
            job.transition(TranscodeState.RESOLVING_STREAMS)
            info = await self.youtube.extract_streams(token.video_id, token.format)
            descriptors = StreamSelector.normalize(info)
            spec = StreamSelector.select(descriptors, token.format)
        else:
            headers = {"User-Agent": config.tiktok.user_agent}
            media_url = await ProxyService.resolve(get_http_client(), token.media_url, headers=headers, label=label)
            spec = StreamSelector.direct(media_url, headers, token.format)

        log_info(
            request,
            _("log.starting_stream", mode="transcode", platform=token.platform, format=meta.ext)
            + f" inputs={len(spec.inputs)} copy_video={spec.copy_video} copy_audio={spec.copy_audio}",
        )
        body = await StreamService.open(job, FFmpegCommandBuilder.build(spec))
        return build_response(body, job.terminate, meta.media_type, disposition)


download_service = DownloadService()


@router.get("/api/download")
async def download_media(
    request: Request,
    source: Optional[str] = Query(None, description="Opaque token from /api/convert"),
    title: Optional[str] = Query(None, description="Display name hint for the file"),
    transcode: bool = Query(False, description="Convert direct sources through ffmpeg instead of proxying"),
):
    """Stream the converted file"""
    token = decode_source(source)

    kind = "audio" if token.format == OutputFormat.MP3 else "video"
    stem = sanitize_filename(title, prefix=f"{token.platform}-{kind}", seed=source or "")

    return await download_service.download(token, stem, transcode, request)
