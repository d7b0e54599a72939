from pydantic import BaseModel, Field, field_validator

from clipdrop.core.errors import ApiError, ErrorCode
from clipdrop.models.internal import OutputFormat


class ConvertRequest(BaseModel):
    url: str = Field("", description="Video URL (TikTok or YouTube)")
    format: str = Field(OutputFormat.MP3.value, description="Requested output format (mp3 or mp4)")

    @field_validator("url", "format", mode="before")
    @classmethod
    def strip_value(cls, v):
        """Blank input is reported by the endpoint, not by pydantic"""
        if v is None:
            return ""
        return str(v).strip()

    def output_format(self) -> OutputFormat:
        """Requested format, mp3 when omitted"""
        try:
            return OutputFormat(self.format.lower() or OutputFormat.MP3.value)
        except ValueError:
            raise ApiError(ErrorCode.UNSUPPORTED_FORMAT, f"unsupported format {self.format!r}", format=self.format)
