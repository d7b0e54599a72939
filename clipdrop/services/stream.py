import asyncio
import logging
from collections import deque
from contextlib import suppress
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional

import anyio
import httpx
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from starlette.types import Receive, Scope, Send

from clipdrop.config.settings import config
from clipdrop.core.errors import ApiError, ErrorCode, StreamAbortedError
from clipdrop.core.security import SecurityValidator
from clipdrop.utils.locale import safe_url_for_log

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0


class TranscodeState(str, Enum):
    IDLE = "idle"
    RESOLVING_STREAMS = "resolving_streams"
    SPAWNED = "spawned"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINAL_STATES = {TranscodeState.COMPLETED, TranscodeState.FAILED, TranscodeState.CANCELLED}


class TranscodeJob:
    """
    One transcoder process feeding one download response.

    The job owns the deadline for the whole download and is the single place
    where the process is torn down; terminate() is idempotent and is reached
    from every exit path (end of body, error, client disconnect, timeout).
    """

    def __init__(
        self,
        label: str = "transcode",
        timeout: Optional[float] = None,
        chunk_size: Optional[int] = None,
    ):
        self.label = label
        self.state = TranscodeState.IDLE
        self.chunk_size = chunk_size or config.transcoder.chunk_size
        self.cmd: List[str] = []
        self.process: Optional[asyncio.subprocess.Process] = None
        self.returncode: Optional[int] = None
        self.stderr_lines: deque = deque(maxlen=config.transcoder.stderr_max_lines)
        self._stderr_task: Optional[asyncio.Task] = None
        self._deadline = asyncio.get_running_loop().time() + (timeout or config.transcoder.timeout_seconds)

    def transition(self, new_state: TranscodeState) -> None:
        if self.state in FINAL_STATES:
            return
        logger.debug(f"{self.label}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def remaining(self) -> float:
        return self._deadline - asyncio.get_running_loop().time()

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def start(self, cmd: List[str]) -> None:
        """Spawn the transcoder: stdin closed, stdout piped, stderr kept for logs"""
        self.cmd = cmd
        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL
            )
        except OSError as e:
            self.transition(TranscodeState.FAILED)
            raise ApiError(ErrorCode.TRANSCODE_FAILED, f"could not spawn {cmd[0]}: {e}")

        self.transition(TranscodeState.SPAWNED)
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info(f"{self.label}: spawned pid={self.process.pid}")

    async def _drain_stderr(self) -> None:
        """Drain stderr to prevent buffer deadlock"""
        assert self.process is not None and self.process.stderr is not None
        while True:
            try:
                line = await self.process.stderr.readline()
            except ValueError:
                # Line longer than the reader limit; the rest is discarded
                continue
            if not line:
                break
            decoded = line.decode(errors="ignore").strip()
            if decoded:
                self.stderr_lines.append(decoded)

    def stderr_summary(self, limit: int = 500) -> str:
        return "\n".join(self.stderr_lines)[-limit:]

    async def read_chunk(self, timeout: Optional[float] = None) -> bytes:
        """Next piece of output; b"" at end of stream"""
        assert self.process is not None and self.process.stdout is not None
        remaining = self.remaining()
        if timeout is not None:
            remaining = min(remaining, timeout)
        if remaining <= 0:
            raise ApiError(ErrorCode.TRANSCODE_TIMEOUT, f"{self.label}: deadline reached")

        try:
            return await asyncio.wait_for(self.process.stdout.read(self.chunk_size), timeout=remaining)
        except asyncio.TimeoutError:
            raise ApiError(ErrorCode.TRANSCODE_TIMEOUT, f"{self.label}: no output within {remaining:.1f}s")

    async def wait(self) -> int:
        """
        Exit status once stdout has reached EOF.

        A healthy transcoder exits right after closing its output, so the wait
        is bounded by ``exit_timeout_seconds`` rather than the whole deadline.
        """
        assert self.process is not None
        timeout = min(max(self.remaining(), 0.0) + TERMINATE_GRACE_SECONDS, config.transcoder.exit_timeout_seconds)
        try:
            self.returncode = await asyncio.wait_for(self.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ApiError(ErrorCode.TRANSCODE_TIMEOUT, f"{self.label}: no exit {timeout:.1f}s after end of output")
        return self.returncode

    async def terminate(self) -> None:
        """Kill the process if still running and reap it"""
        process = self.process
        if process is not None and process.returncode is None:
            logger.info(f"{self.label}: killing pid={process.pid} (state={self.state.value})")
            with suppress(ProcessLookupError):
                process.kill()
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        if process is not None and self.returncode is None:
            self.returncode = process.returncode

        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
        if self._stderr_task is not None:
            with suppress(asyncio.CancelledError):
                await self._stderr_task


async def _shielded(cleanup: Callable[[], Awaitable[None]]) -> None:
    # Cleanup must finish even inside a cancelled scope
    with anyio.CancelScope(shield=True):
        await cleanup()


class GuardedStreamingResponse(StreamingResponse):
    """
    StreamingResponse that always runs ``cleanup`` when the response ends.

    Covers the paths where the body iterator never gets to run its own
    finally block (disconnect before the first chunk, ASGI servers that
    surface disconnects as send errors).
    """

    def __init__(self, content: AsyncIterator[bytes], cleanup: Callable[[], Awaitable[None]], **kwargs):
        super().__init__(content, **kwargs)
        self.cleanup = cleanup

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await _shielded(self.cleanup)


class StreamService:
    """Transcoder output as an HTTP body"""

    @staticmethod
    async def open(job: TranscodeJob, cmd: List[str]) -> AsyncIterator[bytes]:
        """
        Spawn the transcoder and wait for its first bytes.

        Failures up to this point are ApiErrors and become JSON responses;
        the returned iterator only exists once output is flowing.
        """
        await job.start(cmd)
        try:
            first = await job.read_chunk(timeout=config.transcoder.first_byte_timeout_seconds)
            if not first:
                returncode = await job.wait()
                logger.error(f"{job.label}: exited {returncode} without output: {job.stderr_summary()}")
                job.transition(TranscodeState.FAILED)
                raise ApiError(ErrorCode.TRANSCODE_FAILED, f"transcoder exited {returncode} before output")
        except ApiError as e:
            job.transition(TranscodeState.FAILED)
            if e.code == ErrorCode.TRANSCODE_TIMEOUT:
                logger.error(f"{job.label}: timed out before output: {job.stderr_summary()}")
            await _shielded(job.terminate)
            raise
        except BaseException:
            job.transition(TranscodeState.CANCELLED)
            await _shielded(job.terminate)
            raise

        job.transition(TranscodeState.STREAMING)
        return StreamService._body(job, first)

    @staticmethod
    async def _body(job: TranscodeJob, first: bytes) -> AsyncIterator[bytes]:
        """Copy stdout to the client; success needs a clean copy AND exit status 0"""
        sent = 0
        try:
            yield first
            sent += len(first)
            while True:
                chunk = await job.read_chunk()
                if not chunk:
                    break
                yield chunk
                sent += len(chunk)

            returncode = await job.wait()
            if returncode != 0:
                raise StreamAbortedError(f"{job.label}: transcoder exited {returncode} after {sent} bytes")
            job.transition(TranscodeState.COMPLETED)
            logger.info(f"{job.label}: completed, {sent} bytes")

        except (asyncio.CancelledError, GeneratorExit):
            job.transition(TranscodeState.CANCELLED)
            logger.info(f"{job.label}: client went away after {sent} bytes")
            raise
        except StreamAbortedError as e:
            job.transition(TranscodeState.FAILED)
            logger.error(f"{e}: {job.stderr_summary()}")
            raise
        except Exception as e:
            # Headers are committed; the only signal left is dropping the connection
            job.transition(TranscodeState.FAILED)
            logger.error(f"{job.label}: aborted after {sent} bytes: {e}: {job.stderr_summary()}")
            raise StreamAbortedError(f"{job.label}: {e}") from e
        finally:
            await _shielded(job.terminate)


class ProxyService:
    """Pass-through of an already playable media URL"""

    @staticmethod
    async def open(
        client: httpx.AsyncClient,
        url: str,
        headers: Optional[dict] = None,
        label: str = "proxy",
    ) -> tuple[AsyncIterator[bytes], Callable[[], Awaitable[None]], Optional[str]]:
        """
        Open the upstream response and read the first chunk.
        Returns (body, cleanup, upstream content type).
        """
        response = await ProxyService._send(client, url, headers, label)

        async def cleanup() -> None:
            await response.aclose()

        chunks = response.aiter_raw(config.transcoder.chunk_size)
        try:
            first = await chunks.__anext__()
        except StopAsyncIteration:
            await _shielded(cleanup)
            raise ApiError(ErrorCode.UPSTREAM_BAD_RESPONSE, f"{label}: empty media body")
        except httpx.TimeoutException as e:
            await _shielded(cleanup)
            raise ApiError(ErrorCode.UPSTREAM_TIMEOUT, f"{label}: media CDN stalled: {e!r}")
        except httpx.HTTPError as e:
            await _shielded(cleanup)
            raise ApiError(ErrorCode.UPSTREAM_UNAVAILABLE, f"{label}: media read failed: {e!r}")
        except BaseException:
            await _shielded(cleanup)
            raise

        return ProxyService._body(chunks, first, cleanup, label), cleanup, response.headers.get("content-type")

    @staticmethod
    async def resolve(
        client: httpx.AsyncClient,
        url: str,
        headers: Optional[dict] = None,
        label: str = "proxy",
    ) -> str:
        """
        Final media URL after validated redirects.

        Used before handing a direct URL to ffmpeg, which would otherwise
        follow the CDN's redirects itself.
        """
        response = await ProxyService._send(client, url, headers, label)
        await response.aclose()
        return str(response.url)

    @staticmethod
    async def _send(
        client: httpx.AsyncClient,
        url: str,
        headers: Optional[dict],
        label: str,
    ) -> httpx.Response:
        """Open a streamed GET, following redirects by hand so every hop passes the SSRF check"""
        timeout = httpx.Timeout(config.tiktok.proxy_timeout_seconds)
        request = client.build_request("GET", url, headers=headers, timeout=timeout)

        for _ in range(config.security.max_redirects + 1):
            await SecurityValidator.ensure_allowed(str(request.url))
            try:
                response = await client.send(request, stream=True, follow_redirects=False)
            except httpx.TimeoutException as e:
                raise ApiError(ErrorCode.UPSTREAM_TIMEOUT, f"{label}: media CDN timed out: {e!r}")
            except httpx.HTTPError as e:
                raise ApiError(ErrorCode.UPSTREAM_UNAVAILABLE, f"{label}: media CDN unreachable: {e!r}")

            if response.has_redirect_location and response.next_request is not None:
                await response.aclose()
                request = response.next_request
                logger.debug(f"{label}: redirected to {safe_url_for_log(str(request.url))}")
                continue

            if not response.is_success:
                await response.aclose()
                raise ApiError(
                    ErrorCode.UPSTREAM_UNAVAILABLE,
                    f"{label}: media CDN returned HTTP {response.status_code} for {safe_url_for_log(str(request.url))}",
                )
            return response

        raise ApiError(ErrorCode.UPSTREAM_BAD_RESPONSE, f"{label}: more than {config.security.max_redirects} redirects")

    @staticmethod
    async def _body(
        chunks: AsyncIterator[bytes],
        first: bytes,
        cleanup: Callable[[], Awaitable[None]],
        label: str,
    ) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.transcoder.timeout_seconds
        sent = 0
        try:
            yield first
            sent += len(first)
            async for chunk in chunks:
                if loop.time() > deadline:
                    raise StreamAbortedError(f"{label}: deadline reached after {sent} bytes")
                yield chunk
                sent += len(chunk)
            logger.info(f"{label}: completed, {sent} bytes")
        except (asyncio.CancelledError, GeneratorExit):
            logger.info(f"{label}: client went away after {sent} bytes")
            raise
        except httpx.HTTPError as e:
            logger.error(f"{label}: upstream failed after {sent} bytes: {e!r}")
            raise StreamAbortedError(f"{label}: {e!r}") from e
        finally:
            await _shielded(cleanup)


def build_response(
    body: AsyncIterator[bytes],
    cleanup: Callable[[], Awaitable[None]],
    media_type: str,
    content_disposition: str,
    background: Optional[BackgroundTask] = None,
) -> GuardedStreamingResponse:
    headers = {
        'Content-Disposition': content_disposition,
        'X-Content-Type-Options': 'nosniff',
        'Cache-Control': 'no-store',
        'Accept-Ranges': 'none',
    }
    return GuardedStreamingResponse(
        body,
        cleanup=cleanup,
        media_type=media_type,
        headers=headers,
        background=background,
    )
