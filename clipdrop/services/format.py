from clipdrop.models.internal import MediaMetadata, OutputFormat, OUTPUT_METADATA


class FormatDecision:
    """Make format decisions"""

    # H.264 + AAC first so the download phase can stream-copy into mp4
    VIDEO_SELECTOR = (
        "bestvideo[vcodec^=avc1]+bestaudio[acodec^=mp4a]/"
        "bestvideo+bestaudio/best"
    )
    AUDIO_SELECTOR = "bestaudio/best"

    @staticmethod
    def decide(output_format: OutputFormat) -> str:
        """yt-dlp -f expression for the requested output"""
        if output_format == OutputFormat.MP3:
            return FormatDecision.AUDIO_SELECTOR
        return FormatDecision.VIDEO_SELECTOR

    @staticmethod
    def get_metadata(output_format: OutputFormat) -> MediaMetadata:
        """Extension and media type of the produced file"""
        return OUTPUT_METADATA[output_format]
