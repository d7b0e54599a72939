import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from clipdrop.core.errors import ApiError, ErrorCode
from clipdrop.models.internal import MediaStreamDescriptor, OutputFormat, TranscodeSpec

logger = logging.getLogger(__name__)

H264_TAGS = ("avc1", "avc3", "h264")
AAC_TAGS = ("mp4a", "aac")


def is_h264(codec: str) -> bool:
    return (codec or "").lower().startswith(H264_TAGS)


def is_aac(codec: str) -> bool:
    return (codec or "").lower().startswith(AAC_TAGS)


def _descriptor(entry: Mapping[str, Any]) -> Optional[MediaStreamDescriptor]:
    url = entry.get("url")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        return None

    raw_headers = entry.get("http_headers") or {}
    headers = {
        str(k): str(v)
        for k, v in raw_headers.items()
        if v is not None
    } if isinstance(raw_headers, Mapping) else {}

    return MediaStreamDescriptor(
        url=url,
        headers=headers,
        video_codec=str(entry.get("vcodec") or ""),
        audio_codec=str(entry.get("acodec") or ""),
    )


class StreamSelector:
    """Turn yt-dlp output into the inputs and codec plan for ffmpeg"""

    @staticmethod
    def normalize(info: Dict[str, Any]) -> List[MediaStreamDescriptor]:
        """
        Flatten both yt-dlp shapes into one ordered list.

        ``requested_formats`` is present when the selector merged separate
        tracks (bestvideo+bestaudio); otherwise the document itself describes
        the single chosen stream.
        """
        requested = info.get("requested_formats")
        entries: Iterable[Any]
        if isinstance(requested, list) and requested:
            entries = requested
        else:
            entries = [info]

        descriptors = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            descriptor = _descriptor(entry)
            if descriptor is not None:
                descriptors.append(descriptor)
        return descriptors

    @staticmethod
    def select(descriptors: List[MediaStreamDescriptor], output_format: OutputFormat) -> TranscodeSpec:
        if not descriptors:
            raise ApiError(ErrorCode.STREAM_RESOLUTION_EMPTY, "no stream descriptors")

        if output_format == OutputFormat.MP3:
            return StreamSelector._select_audio(descriptors)
        return StreamSelector._select_video(descriptors)

    @staticmethod
    def _select_audio(descriptors: List[MediaStreamDescriptor]) -> TranscodeSpec:
        audio = next((d for d in descriptors if d.has_audio), None)
        if audio is None:
            # Untagged streams may still carry audio; an explicit "none" never does
            audio = next((d for d in descriptors if not d.audio_codec), None)
        if audio is None:
            raise ApiError(ErrorCode.STREAM_RESOLUTION_EMPTY, "no audio-bearing stream")

        # MP3 output always re-encodes
        return TranscodeSpec(
            inputs=(audio,),
            copy_video=False,
            copy_audio=False,
            output_format=OutputFormat.MP3,
            maps=((0, "a:0"),),
        )

    @staticmethod
    def _select_video(descriptors: List[MediaStreamDescriptor]) -> TranscodeSpec:
        with_video = [d for d in descriptors if d.has_video]
        if not with_video:
            raise ApiError(ErrorCode.STREAM_RESOLUTION_EMPTY, "no video-bearing stream")

        video = next((d for d in with_video if d.has_audio), with_video[0])

        if video.has_audio:
            return TranscodeSpec(
                inputs=(video,),
                copy_video=is_h264(video.video_codec),
                copy_audio=is_aac(video.audio_codec),
                output_format=OutputFormat.MP4,
                maps=((0, "v:0"), (0, "a:0")),
            )

        audio = next((d for d in descriptors if d.has_audio and not d.has_video), None)
        if audio is None:
            logger.warning("No separate audio track found; producing video-only mp4")
            return TranscodeSpec(
                inputs=(video,),
                copy_video=is_h264(video.video_codec),
                copy_audio=False,
                output_format=OutputFormat.MP4,
                maps=((0, "v:0"),),
            )

        return TranscodeSpec(
            inputs=(video, audio),
            copy_video=is_h264(video.video_codec),
            copy_audio=is_aac(audio.audio_codec),
            output_format=OutputFormat.MP4,
            maps=((0, "v:0"), (1, "a:0")),
        )

    @staticmethod
    def direct(url: str, headers: Dict[str, str], output_format: OutputFormat) -> TranscodeSpec:
        """Single input of unknown codecs, used when a direct URL must be converted"""
        descriptor = MediaStreamDescriptor(url=url, headers=headers)
        if output_format == OutputFormat.MP3:
            maps = ((0, "a:0"),)
        else:
            maps = ((0, "v:0"), (0, "a:0?"))
        return TranscodeSpec(
            inputs=(descriptor,),
            copy_video=False,
            copy_audio=False,
            output_format=output_format,
            maps=maps,
        )
