from .errors import ApiError, ErrorCode, StreamAbortedError

__all__ = ["ApiError", "ErrorCode", "StreamAbortedError"]
