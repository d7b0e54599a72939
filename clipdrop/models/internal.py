from enum import Enum
from typing import Annotated, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    TIKTOK = "tiktok"
    YOUTUBE = "youtube"
    UNSUPPORTED = "unsupported"


class OutputFormat(str, Enum):
    MP3 = "mp3"
    MP4 = "mp4"


class TikTokSource(BaseModel):
    """Direct-resolution source: the media URL is known at convert time"""
    model_config = ConfigDict(frozen=True)

    platform: Literal["tiktok"] = "tiktok"
    format: OutputFormat
    media_url: str = Field(..., min_length=1)


class YouTubeSource(BaseModel):
    """Identifier-resolution source: streams are re-resolved at download time"""
    model_config = ConfigDict(frozen=True)

    platform: Literal["youtube"] = "youtube"
    format: OutputFormat
    video_id: str = Field(..., pattern=r"^[A-Za-z0-9_-]{11}$")


SourceToken = Annotated[Union[TikTokSource, YouTubeSource], Field(discriminator="platform")]


class ResolvedMedia(BaseModel):
    """Outcome of the convert phase"""
    title: str
    author: str
    cover: Optional[str] = None
    duration: Optional[float] = None
    media_id: Optional[str] = None
    source: SourceToken


class MediaStreamDescriptor(BaseModel):
    """One candidate track as reported by the extraction tool"""
    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1)
    headers: Dict[str, str] = Field(default_factory=dict)
    video_codec: str = ""
    audio_codec: str = ""

    @property
    def has_video(self) -> bool:
        return _present(self.video_codec)

    @property
    def has_audio(self) -> bool:
        return _present(self.audio_codec)


def _present(codec: str) -> bool:
    return bool(codec) and codec.lower() != "none"


class TranscodeSpec(BaseModel):
    """Everything ffmpeg needs for one download"""
    model_config = ConfigDict(frozen=True)

    inputs: Tuple[MediaStreamDescriptor, ...]
    copy_video: bool = False
    copy_audio: bool = False
    output_format: OutputFormat
    # (input index, stream selector) pairs, e.g. (0, "v:0"), (1, "a:0")
    maps: Tuple[Tuple[int, str], ...] = ()


class MediaMetadata(BaseModel):
    """Output container details"""
    ext: str
    media_type: str


OUTPUT_METADATA: Dict[OutputFormat, MediaMetadata] = {
    OutputFormat.MP3: MediaMetadata(ext="mp3", media_type="audio/mpeg"),
    OutputFormat.MP4: MediaMetadata(ext="mp4", media_type="video/mp4"),
}
