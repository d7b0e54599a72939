from .internal import (
    MediaStreamDescriptor,
    OutputFormat,
    Platform,
    ResolvedMedia,
    SourceToken,
    TikTokSource,
    TranscodeSpec,
    YouTubeSource,
)
from .request import ConvertRequest
from .response import ConvertResponse, ErrorResponse

__all__ = [
    "ConvertRequest",
    "ConvertResponse",
    "ErrorResponse",
    "MediaStreamDescriptor",
    "OutputFormat",
    "Platform",
    "ResolvedMedia",
    "SourceToken",
    "TikTokSource",
    "TranscodeSpec",
    "YouTubeSource",
]
