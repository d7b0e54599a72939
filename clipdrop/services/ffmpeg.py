from typing import List, Mapping

from clipdrop.config.settings import config
from clipdrop.models.internal import OutputFormat, TranscodeSpec

# Fragmented MP4: playable while written, no seek back to patch the moov atom
MP4_MOVFLAGS = "frag_keyframe+empty_moov+default_base_moof"


class FFmpegCommandBuilder:
    """Build ffmpeg commands that write the finished file to stdout"""

    @staticmethod
    def format_headers(headers: Mapping[str, str]) -> str:
        """ffmpeg -headers value: CRLF-terminated lines; CR/LF inside values are dropped"""
        lines = []
        for name, value in headers.items():
            name = "".join(ch for ch in str(name) if ch not in "\r\n:")
            value = str(value).replace("\r", "").replace("\n", "")
            if name:
                lines.append(f"{name}: {value}\r\n")
        return "".join(lines)

    @staticmethod
    def build(spec: TranscodeSpec) -> List[str]:
        cmd = [
            config.transcoder.binary,
            '-hide_banner',
            '-loglevel', 'error',
            '-nostdin',
        ]

        for descriptor in spec.inputs:
            # Input options must precede the -i they apply to
            cmd.extend(['-reconnect', '1', '-reconnect_streamed', '1', '-reconnect_delay_max', '5'])
            if descriptor.headers:
                cmd.extend(['-headers', FFmpegCommandBuilder.format_headers(descriptor.headers)])
            cmd.extend(['-i', descriptor.url])

        for index, selector in spec.maps:
            cmd.extend(['-map', f'{index}:{selector}'])

        if spec.output_format == OutputFormat.MP3:
            cmd.extend([
                '-vn',
                '-c:a', 'libmp3lame',
                '-b:a', config.transcoder.audio_bitrate,
                '-f', 'mp3',
            ])
        else:
            if spec.copy_video:
                cmd.extend(['-c:v', 'copy'])
            else:
                cmd.extend([
                    '-c:v', 'libx264',
                    '-preset', config.transcoder.video_preset,
                    '-pix_fmt', 'yuv420p',
                ])

            if any(selector.startswith('a') for _, selector in spec.maps):
                if spec.copy_audio:
                    cmd.extend(['-c:a', 'copy'])
                else:
                    cmd.extend(['-c:a', 'aac', '-b:a', config.transcoder.audio_bitrate])

            cmd.extend([
                '-movflags', MP4_MOVFLAGS,
                '-f', 'mp4',
            ])

        cmd.append('pipe:1')
        return cmd
