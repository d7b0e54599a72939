from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes returned to clients"""
    # Input validation
    MISSING_URL = "missing_url"
    UNSUPPORTED_URL = "unsupported_url"
    INVALID_VIDEO_ID = "invalid_video_id"
    UNSUPPORTED_FORMAT = "unsupported_format"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    BLOCKED_URL = "blocked_url"
    # Upstream unavailable
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_BAD_RESPONSE = "upstream_bad_response"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    TOOL_UNAVAILABLE = "tool_unavailable"
    TRANSCODE_FAILED = "transcode_failed"
    TRANSCODE_TIMEOUT = "transcode_timeout"
    # Upstream semantic
    VIDEO_UNAVAILABLE = "video_unavailable"
    MEDIA_UNAVAILABLE = "media_unavailable"
    BOT_CHALLENGE = "bot_challenge"
    STREAM_RESOLUTION_EMPTY = "stream_resolution_empty"
    # Internal
    INTERNAL_ERROR = "internal_error"


STATUS_CODES = {
    ErrorCode.MISSING_URL: 400,
    ErrorCode.UNSUPPORTED_URL: 400,
    ErrorCode.INVALID_VIDEO_ID: 400,
    ErrorCode.UNSUPPORTED_FORMAT: 400,
    ErrorCode.INVALID_TOKEN: 400,
    ErrorCode.TOKEN_EXPIRED: 400,
    ErrorCode.BLOCKED_URL: 403,
    ErrorCode.UPSTREAM_UNAVAILABLE: 502,
    ErrorCode.UPSTREAM_BAD_RESPONSE: 502,
    ErrorCode.UPSTREAM_TIMEOUT: 504,
    ErrorCode.TOOL_UNAVAILABLE: 503,
    ErrorCode.TRANSCODE_FAILED: 502,
    ErrorCode.TRANSCODE_TIMEOUT: 504,
    ErrorCode.VIDEO_UNAVAILABLE: 404,
    ErrorCode.MEDIA_UNAVAILABLE: 422,
    ErrorCode.BOT_CHALLENGE: 403,
    ErrorCode.STREAM_RESOLUTION_EMPTY: 422,
    ErrorCode.INTERNAL_ERROR: 500,
}


class ApiError(Exception):
    """
    Failure that maps to exactly one structured error response.

    The message is an i18n key; it is rendered in the client's locale
    by the exception handler in main.py.
    """

    def __init__(self, code: ErrorCode, detail: str = "", **params: Any):
        self.code = code
        self.status_code = STATUS_CODES[code]
        self.message_key = f"error.{code.value}"
        self.params = params
        self.detail = detail
        super().__init__(detail or code.value)

    @property
    def is_client_error(self) -> bool:
        return self.status_code < 500


class StreamAbortedError(RuntimeError):
    """Raised once body bytes are committed; the connection is dropped instead of answered"""
