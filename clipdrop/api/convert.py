import functools
import json
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Request
from pydantic import ValidationError

from clipdrop.core.errors import ApiError, ErrorCode
from clipdrop.core.logging import log_info
from clipdrop.i18n import i18n
from clipdrop.models.internal import OutputFormat, Platform, ResolvedMedia
from clipdrop.models.request import ConvertRequest
from clipdrop.models.response import ConvertResponse, MediaInfo, MediaMeta
from clipdrop.services.format import FormatDecision
from clipdrop.services.platform import classify
from clipdrop.services.tiktok import TikTokResolver
from clipdrop.services.token import encode_source
from clipdrop.services.youtube import YouTubeResolver
from clipdrop.utils.filename import sanitize_filename
from clipdrop.utils.locale import get_locale, safe_url_for_log

router = APIRouter()


class ConvertService:
    """Convert phase: URL in, metadata and an opaque download link out"""

    def __init__(self, tiktok: Optional[TikTokResolver] = None, youtube: Optional[YouTubeResolver] = None):
        self.tiktok = tiktok or TikTokResolver()
        self.youtube = youtube or YouTubeResolver()

    async def resolve(self, url: str, output_format: OutputFormat) -> ResolvedMedia:
        if not url:
            raise ApiError(ErrorCode.MISSING_URL, "url is required")

        classified = classify(url)
        if classified.platform == Platform.TIKTOK:
            return await self.tiktok.resolve(url, output_format)
        if classified.platform == Platform.YOUTUBE:
            if not classified.video_id:
                raise ApiError(ErrorCode.INVALID_VIDEO_ID, f"no video id in {safe_url_for_log(url)}")
            return await self.youtube.resolve(classified.video_id, output_format)
        raise ApiError(ErrorCode.UNSUPPORTED_URL, f"unsupported url {safe_url_for_log(url)}")

    @staticmethod
    def build_response(resolved: ResolvedMedia, original_url: str) -> ConvertResponse:
        source = resolved.source
        kind = "audio" if source.format == OutputFormat.MP3 else "video"
        token = encode_source(source)
        safe_title = sanitize_filename(
            resolved.title,
            prefix=f"{source.platform}-{kind}",
            seed=resolved.media_id or original_url,
        )
        ext = FormatDecision.get_metadata(source.format).ext

        media = MediaInfo(
            title=resolved.title,
            author=resolved.author,
            cover=resolved.cover,
            duration=resolved.duration,
            format=source.format.value,
            file_name=f"{safe_title}.{ext}",
            download_path="/api/download?" + urlencode({"source": token, "title": safe_title}),
        )
        return ConvertResponse(
            media=media,
            audio=media if source.format == OutputFormat.MP3 else None,
            meta=MediaMeta(
                platform=source.platform,
                id=resolved.media_id,
                original_url=original_url,
                thumbnail=resolved.cover,
                video_duration=resolved.duration,
            ),
        )


convert_service = ConvertService()


async def read_convert_request(request: Request) -> ConvertRequest:
    """Accept JSON bodies and urlencoded forms alike"""
    content_type = request.headers.get("content-type", "")
    try:
        if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            data = dict(await request.form())
        else:
            raw = await request.body()
            data = json.loads(raw) if raw.strip() else {}
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ApiError(ErrorCode.MISSING_URL, "request body is not valid JSON")

    if not isinstance(data, dict):
        raise ApiError(ErrorCode.MISSING_URL, "request body must be an object")
    try:
        return ConvertRequest.model_validate(data)
    except ValidationError:
        raise ApiError(ErrorCode.MISSING_URL, "request body has no usable url")


@router.post("/api/convert", response_model=ConvertResponse, response_model_by_alias=True)
async def convert(request: Request):
    """Resolve a TikTok or YouTube URL and return a download link"""
    locale = get_locale(request.headers.get("accept-language"))
    _ = functools.partial(i18n.get, locale=locale)

    convert_request = await read_convert_request(request)
    output_format = convert_request.output_format()

    log_info(request, _("log.converting", url=safe_url_for_log(convert_request.url), format=output_format.value))
    resolved = await convert_service.resolve(convert_request.url, output_format)
    log_info(request, _("log.resolved", title=resolved.title, platform=resolved.source.platform))

    return convert_service.build_response(resolved, convert_request.url)
