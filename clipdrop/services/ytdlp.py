import asyncio
import logging
from contextlib import suppress
from typing import List, NamedTuple, Optional

from clipdrop.config.settings import config
from clipdrop.core.state import state

logger = logging.getLogger(__name__)


class CompletedProcess(NamedTuple):
    """Exit status and captured output of one yt-dlp run"""
    returncode: int
    stdout: bytes
    stderr: bytes


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()


class SubprocessExecutor:
    """Run a short-lived tool to completion; the process never outlives the call"""

    @staticmethod
    async def run(
        cmd: List[str],
        timeout: float,
        capture_stderr: bool = True
    ) -> CompletedProcess:
        """
        Collect stdout (and stderr) within ``timeout`` seconds.
        Raises asyncio.TimeoutError after killing the process; OSError when
        the binary cannot be started.
        """
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE if capture_stderr else asyncio.subprocess.DEVNULL,
            stdin=asyncio.subprocess.DEVNULL
        )
        logger.debug(f"{cmd[0]}: started pid={process.pid}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{cmd[0]}: no result after {timeout}s, killing pid={process.pid}")
            await _kill(process)
            raise
        except BaseException:
            # Request cancelled while waiting
            await _kill(process)
            raise

        return CompletedProcess(process.returncode, stdout, stderr or b"")


class YTDLPCommandBuilder:
    """Build yt-dlp commands"""

    @staticmethod
    def build_info_command(
        url: str,
        format_str: str,
        cookies_file: Optional[str] = None,
        pot_provider_url: Optional[str] = None
    ) -> List[str]:
        """
        Build command for fetching video info and the resolved stream URLs.
        The same invocation serves the convert phase (metadata only) and the
        download phase (fresh stream URLs).
        """
        cmd = [
            config.ytdlp.binary,
            '--dump-json',
            '--no-playlist',
            '--no-warnings',
            '--socket-timeout', str(config.ytdlp.socket_timeout),
            '--retries', str(config.ytdlp.retries),
            '-f', format_str,
        ]

        cookies_file = cookies_file or config.ytdlp.cookies_file
        if cookies_file:
            cmd.extend(['--cookies', cookies_file])

        pot_provider_url = pot_provider_url or config.ytdlp.pot_provider_url
        if pot_provider_url:
            cmd.extend(['--extractor-args', f'youtubepot-bgutilhttp:base_url={pot_provider_url}'])

        if state.js_runtime:
            cmd.extend(['--js-runtimes', state.js_runtime])

        # End of options: the URL can never be read as a flag
        cmd.extend(['--', url])

        return cmd
