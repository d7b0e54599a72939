import logging
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import httpx

from clipdrop.config.settings import config
from clipdrop.core.errors import ApiError, ErrorCode
from clipdrop.infra.http import get_http_client
from clipdrop.models.internal import OutputFormat, ResolvedMedia, TikTokSource
from clipdrop.utils.locale import safe_url_for_log

logger = logging.getLogger(__name__)

# Renditions tried for mp4, best first
VIDEO_FIELDS = ("hdplay", "play")
WATERMARKED_FIELD = "wmplay"


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


class TikTokResolver:
    """
    Direct-resolution variant.

    One form-encoded POST to the metadata provider returns everything,
    including a media URL that can be fetched immediately.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or get_http_client()

    async def fetch_payload(self, url: str) -> Dict[str, Any]:
        endpoint = config.tiktok.metadata_endpoint
        try:
            response = await self.client.post(
                endpoint,
                data={"url": url},
                headers={"Content-Type": "application/x-www-form-urlencoded; charset=UTF-8"},
                timeout=config.tiktok.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise ApiError(ErrorCode.UPSTREAM_TIMEOUT, f"metadata provider timed out: {e!r}")
        except httpx.HTTPError as e:
            raise ApiError(ErrorCode.UPSTREAM_UNAVAILABLE, f"metadata provider unreachable: {e!r}")

        if not response.is_success:
            raise ApiError(
                ErrorCode.UPSTREAM_UNAVAILABLE,
                f"metadata provider returned HTTP {response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError:
            raise ApiError(ErrorCode.UPSTREAM_BAD_RESPONSE, "metadata provider returned non-JSON body")

        if not isinstance(payload, dict):
            raise ApiError(ErrorCode.UPSTREAM_BAD_RESPONSE, "metadata provider returned a non-object")
        return payload

    @staticmethod
    def pick_media_url(data: Dict[str, Any], output_format: OutputFormat) -> Optional[str]:
        if output_format == OutputFormat.MP3:
            return _text(data.get("music")) or None

        fields = VIDEO_FIELDS + ((WATERMARKED_FIELD,) if config.tiktok.allow_watermarked else ())
        for name in fields:
            value = _text(data.get(name))
            if value:
                return value
        return None

    async def resolve(self, url: str, output_format: OutputFormat) -> ResolvedMedia:
        payload = await self.fetch_payload(url)

        if payload.get("code") != 0:
            raise ApiError(
                ErrorCode.VIDEO_UNAVAILABLE,
                f"provider code={payload.get('code')!r} msg={str(payload.get('msg'))[:200]!r}",
            )

        data = payload.get("data")
        if not isinstance(data, dict):
            raise ApiError(ErrorCode.UPSTREAM_BAD_RESPONSE, "provider success without data object")

        media_url = self.pick_media_url(data, output_format)
        if not media_url:
            raise ApiError(
                ErrorCode.MEDIA_UNAVAILABLE,
                f"no {output_format.value} media field in provider data",
                format=output_format.value,
            )
        # The provider sometimes answers with paths relative to its own origin
        media_url = urljoin(config.tiktok.metadata_endpoint, media_url)
        logger.debug(f"TikTok media resolved: {safe_url_for_log(media_url)}")

        music_info = data.get("music_info") if isinstance(data.get("music_info"), dict) else {}
        author_info = data.get("author") if isinstance(data.get("author"), dict) else {}

        if output_format == OutputFormat.MP3:
            title = _text(data.get("title")) or _text(music_info.get("title")) or "TikTok Audio"
            author = _text(music_info.get("author")) or _text(author_info.get("nickname")) or "TikTok creator"
        else:
            title = _text(data.get("title")) or "TikTok Video"
            author = _text(author_info.get("nickname")) or _text(author_info.get("unique_id")) or "TikTok creator"

        cover = _text(data.get("cover")) or _text(data.get("origin_cover")) or None
        if cover:
            cover = urljoin(config.tiktok.metadata_endpoint, cover)

        duration = data.get("duration")
        return ResolvedMedia(
            title=title,
            author=author,
            cover=cover,
            duration=duration if isinstance(duration, (int, float)) else None,
            media_id=str(data["id"]) if data.get("id") is not None else None,
            source=TikTokSource(format=output_format, media_url=media_url),
        )
