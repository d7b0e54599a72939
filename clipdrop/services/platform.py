import re
from typing import NamedTuple, Optional
from urllib.parse import parse_qs, urlparse

from clipdrop.models.internal import Platform

VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")

YOUTUBE_HOSTS = {
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtube-nocookie.com",
    "www.youtube-nocookie.com",
}
SHORT_HOSTS = {"youtu.be", "www.youtu.be"}
ID_PATH_PREFIXES = ("shorts", "embed", "live", "v")


class ClassifiedUrl(NamedTuple):
    platform: Platform
    video_id: Optional[str] = None


UNSUPPORTED = ClassifiedUrl(Platform.UNSUPPORTED)


def _valid_id(candidate: Optional[str]) -> Optional[str]:
    if candidate and VIDEO_ID_PATTERN.match(candidate):
        return candidate
    return None


def extract_youtube_id(parsed) -> Optional[str]:
    """Video id from watch, youtu.be, /shorts/, /embed/, /live/ and /v/ forms"""
    host = (parsed.hostname or "").lower()
    segments = [s for s in parsed.path.split("/") if s]

    if host in SHORT_HOSTS:
        return _valid_id(segments[0]) if segments else None

    if segments[:1] == ["watch"]:
        values = parse_qs(parsed.query).get("v")
        return _valid_id(values[0]) if values else None

    if len(segments) >= 2 and segments[0] in ID_PATH_PREFIXES:
        return _valid_id(segments[1])

    return None


def classify(url: str) -> ClassifiedUrl:
    """
    Decide which resolver handles ``url``.
    Never raises: anything that is not a well-formed http(s) URL is unsupported.
    """
    try:
        parsed = urlparse((url or "").strip())
        host = (parsed.hostname or "").lower()
    except (ValueError, AttributeError):
        return UNSUPPORTED

    if parsed.scheme not in ("http", "https") or not host:
        return UNSUPPORTED

    if host == "tiktok.com" or host.endswith(".tiktok.com"):
        return ClassifiedUrl(Platform.TIKTOK)

    if host in YOUTUBE_HOSTS or host in SHORT_HOSTS:
        return ClassifiedUrl(Platform.YOUTUBE, extract_youtube_id(parsed))

    return UNSUPPORTED


def canonical_watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"
