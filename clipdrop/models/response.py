from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class MediaInfo(BaseModel):
    """Resolved media, ready to download"""
    model_config = ConfigDict(populate_by_name=True)

    title: str
    author: str
    cover: Optional[str] = None
    duration: Optional[float] = None
    format: str
    file_name: str = Field(..., alias="fileName")
    download_path: str = Field(..., alias="downloadPath")


class MediaMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform: str
    id: Optional[str] = None
    original_url: str = Field(..., alias="originalUrl")
    thumbnail: Optional[str] = None
    video_duration: Optional[float] = Field(None, alias="videoDuration")


class ConvertResponse(BaseModel):
    """Convert phase response"""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    media: MediaInfo
    # Older clients read the mp3 result from "audio"
    audio: Optional[MediaInfo] = None
    meta: MediaMeta


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: str
