import secrets
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ApiConfig(BaseModel):
    title: str = Field(default="clipdrop", description="API title")
    description: str = Field(default="Social video to MP3/MP4 conversion API", description="API description")
    version: str = Field(default="1.0.0", description="API version")
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    debug: bool = Field(default=False, description="Enable debug mode")


class TikTokConfig(BaseModel):
    metadata_endpoint: str = Field(default="https://www.tikwm.com/api/", description="Metadata provider endpoint")
    timeout_seconds: float = Field(default=15.0, gt=0, description="Metadata request timeout")
    proxy_timeout_seconds: float = Field(default=30.0, gt=0, description="Timeout while waiting on the media CDN")
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/122.0.0.0 Safari/537.36"
        ),
        description="User-Agent sent to the provider and the CDN",
    )
    allow_watermarked: bool = Field(default=False, description="Fall back to the watermarked rendition for mp4")


class YtDlpConfig(BaseModel):
    binary: str = Field(default="yt-dlp", description="yt-dlp executable")
    socket_timeout: int = Field(default=10, ge=1, description="Socket timeout for yt-dlp")
    retries: int = Field(default=3, ge=0, description="Number of retries inside yt-dlp")
    info_timeout_seconds: float = Field(default=30.0, gt=0, description="Ceiling for one metadata extraction")
    cookies_file: Optional[str] = Field(default=None, description="Netscape cookie file passed to yt-dlp")
    pot_provider_url: Optional[str] = Field(default=None, description="Proof-of-origin token provider base URL")
    js_runtime: Optional[str] = Field(default=None, description="JS runtime path (e.g., deno:/usr/local/bin/deno)")


class TranscoderConfig(BaseModel):
    binary: str = Field(default="ffmpeg", description="ffmpeg executable")
    timeout_seconds: float = Field(default=3600.0, gt=0, description="Ceiling for one download")
    first_byte_timeout_seconds: float = Field(default=60.0, gt=0, description="Wait for the first output bytes")
    chunk_size: int = Field(default=64 * 1024, ge=1024, description="Read size from the transcoder pipe")
    audio_bitrate: str = Field(default="192k", description="MP3 / AAC target bitrate")
    video_preset: str = Field(default="veryfast", description="libx264 preset when re-encoding")
    stderr_max_lines: int = Field(default=50, ge=1, description="Transcoder diagnostics kept for logging")
    exit_timeout_seconds: float = Field(default=10.0, gt=0, description="Wait for the exit status once output has ended")


class TokenConfig(BaseModel):
    secret: str = Field(default_factory=lambda: secrets.token_urlsafe(32), description="HMAC key for download tokens")
    max_age_seconds: int = Field(default=6 * 3600, ge=60, description="Download token lifetime")


class SecurityConfig(BaseModel):
    enable_ssrf_protection: bool = Field(default=True, description="Enable SSRF protection")
    allow_private_ips: bool = Field(default=False, description="Allow private IP ranges")
    allow_localhost: bool = Field(default=False, description="Allow localhost access")
    max_redirects: int = Field(default=5, ge=0, description="Redirect hops followed for a media URL, each one validated")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="%(message)s", description="Log format")
    enable_rich: bool = Field(default=True, description="Enable rich console logging")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()


class I18nConfig(BaseModel):
    default_locale: str = Field(default="en", description="Default locale")
    supported_locales: list = Field(default=["en", "fr"], description="Supported locales")


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CLIPDROP_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    api: ApiConfig = Field(default_factory=ApiConfig)
    tiktok: TikTokConfig = Field(default_factory=TikTokConfig)
    ytdlp: YtDlpConfig = Field(default_factory=YtDlpConfig)
    transcoder: TranscoderConfig = Field(default_factory=TranscoderConfig)
    token: TokenConfig = Field(default_factory=TokenConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    i18n: I18nConfig = Field(default_factory=I18nConfig)


config = Config()
