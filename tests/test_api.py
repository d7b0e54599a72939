import asyncio
import json
import socket
import sys
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import pytest
import uvicorn

from clipdrop.api import convert, download
from clipdrop.config.settings import config
from clipdrop.core.security import SecurityValidator, clear_resolution_cache
from clipdrop.i18n import i18n
from clipdrop.infra.http import close_http_client, init_http_client
from clipdrop.main import app
from clipdrop.models.internal import OutputFormat, TikTokSource, YouTubeSource
from clipdrop.services.ffmpeg import FFmpegCommandBuilder
from clipdrop.services.tiktok import TikTokResolver
from clipdrop.services.token import codec, decode_source, encode_source
from clipdrop.services.youtube import YouTubeResolver
from clipdrop.services.ytdlp import CompletedProcess

TIKTOK_URL = "https://www.tiktok.com/@a/video/123"

PROVIDER_OK = {
    "code": 0,
    "msg": "success",
    "data": {
        "id": "7212345678901234567",
        "title": "Dance clip",
        "cover": "https://p16.example.com/cover.jpg",
        "duration": 15,
        "hdplay": "https://v16.example.com/hd.mp4",
        "music": "https://sf16.example.com/music.mp3",
        "music_info": {"title": "original sound", "author": "DJ Test"},
        "author": {"nickname": "Dancer"},
    },
}


def python_cmd(code: str) -> list:
    return [sys.executable, "-c", code]


async def chunked(payload: bytes, size: int = 16 * 1024):
    for start in range(0, len(payload), size):
        yield payload[start:start + size]


@pytest.fixture
def tiktok_provider(monkeypatch):
    """Route the convert endpoint's TikTok lookups to a handler set by the test"""
    def use(handler):
        resolver = TikTokResolver(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        monkeypatch.setattr(convert.convert_service, "tiktok", resolver)

    return use


@pytest.fixture
async def media_cdn():
    """Shared HTTP client answering every request from a handler set by the test"""
    routes = {}

    def handler(request: httpx.Request) -> httpx.Response:
        return routes["handler"](request)

    await init_http_client(transport=httpx.MockTransport(handler))
    yield lambda fn: routes.update(handler=fn)
    await close_http_client()


class FakeExecutor:
    def __init__(self, stdout: bytes):
        self.stdout = stdout

    async def run(self, cmd, timeout, capture_stderr=True):
        return CompletedProcess(0, self.stdout, b"")


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == i18n.get("response.status_running")


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_health_check_full(client, tools_available):
    response = await client.get("/api/health/full")
    assert response.status_code == 200
    body = response.json()
    assert body["tools"]["ffmpeg"]["available"] is True
    assert body["ffmpeg_version"] == "ffmpeg version 6.1"
    assert body["ytdlp_version"] == "2024.08.06"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/api/health", headers={"X-Request-ID": "abc123"})
    assert response.headers["x-request-id"] == "abc123"


@pytest.mark.asyncio
@pytest.mark.parametrize("body,code", [
    ({}, "missing_url"),
    ({"url": "   "}, "missing_url"),
    ({"url": "https://example.com/x"}, "unsupported_url"),
    ({"url": "https://www.youtube.com/watch?v=nope"}, "invalid_video_id"),
    ({"url": TIKTOK_URL, "format": "wav"}, "unsupported_format"),
])
async def test_convert_input_errors(client, body, code):
    response = await client.post("/api/convert", json=body)

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "error": i18n.get(f"error.{code}", format=body.get("format", "")),
        "code": code,
    }


@pytest.mark.asyncio
async def test_convert_error_is_localized(client):
    response = await client.post(
        "/api/convert",
        json={"url": "https://example.com/x"},
        headers={"Accept-Language": "fr-FR,fr;q=0.9"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == i18n.get("error.unsupported_url", locale="fr")
    assert response.json()["error"] != i18n.get("error.unsupported_url", locale="en")


@pytest.mark.asyncio
async def test_convert_malformed_json(client):
    response = await client.post(
        "/api/convert",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "missing_url"


@pytest.mark.asyncio
async def test_convert_tiktok_mp3(client, tiktok_provider):
    tiktok_provider(lambda request: httpx.Response(200, json=PROVIDER_OK))

    response = await client.post("/api/convert", json={"url": TIKTOK_URL, "format": "mp3"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["media"]["title"] == "Dance clip"
    assert body["media"]["author"] == "DJ Test"
    assert body["media"]["fileName"] == "Dance-clip.mp3"
    assert body["audio"] == body["media"]
    assert body["meta"] == {
        "platform": "tiktok",
        "id": "7212345678901234567",
        "originalUrl": TIKTOK_URL,
        "thumbnail": "https://p16.example.com/cover.jpg",
        "videoDuration": 15,
    }

    download_path = urlparse(body["media"]["downloadPath"])
    assert download_path.path == "/api/download"
    query = parse_qs(download_path.query)
    assert query["title"] == ["Dance-clip"]
    assert decode_source(query["source"][0]) == TikTokSource(
        format=OutputFormat.MP3, media_url="https://sf16.example.com/music.mp3"
    )


@pytest.mark.asyncio
async def test_convert_accepts_form_body(client, tiktok_provider):
    tiktok_provider(lambda request: httpx.Response(200, json=PROVIDER_OK))

    response = await client.post("/api/convert", data={"url": TIKTOK_URL, "format": "MP4"})

    assert response.status_code == 200
    body = response.json()
    assert body["media"]["format"] == "mp4"
    assert body["media"]["fileName"] == "Dance-clip.mp4"
    assert body["audio"] is None


@pytest.mark.asyncio
async def test_convert_provider_unavailable(client, tiktok_provider):
    tiktok_provider(lambda request: httpx.Response(503, text="Service Unavailable"))

    response = await client.post("/api/convert", json={"url": TIKTOK_URL})

    assert response.status_code == 502
    assert response.json()["code"] == "upstream_unavailable"


@pytest.mark.asyncio
async def test_convert_provider_timeout(client, tiktok_provider):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    tiktok_provider(handler)

    response = await client.post("/api/convert", json={"url": TIKTOK_URL})

    assert response.status_code == 504
    assert response.json()["code"] == "upstream_timeout"


@pytest.mark.asyncio
async def test_convert_youtube(client, tools_available, monkeypatch):
    info = {"id": "dQw4w9WgXcQ", "title": "Never Gonna Give You Up", "uploader": "Rick Astley", "duration": 213}
    monkeypatch.setattr(
        convert.convert_service, "youtube",
        YouTubeResolver(FakeExecutor(json.dumps(info).encode())),
    )

    response = await client.post("/api/convert", json={"url": "https://youtu.be/dQw4w9WgXcQ", "format": "mp4"})

    assert response.status_code == 200
    body = response.json()
    assert body["meta"]["platform"] == "youtube"
    assert body["meta"]["id"] == "dQw4w9WgXcQ"
    assert body["media"]["fileName"] == "Never-Gonna-Give-You-Up.mp4"
    query = parse_qs(urlparse(body["media"]["downloadPath"]).query)
    assert decode_source(query["source"][0]) == YouTubeSource(format=OutputFormat.MP4, video_id="dQw4w9WgXcQ")


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [
    {},
    {"source": "garbage"},
    {"source": "a.b"},
    {"source": "abc", "transcode": "maybe"},
])
async def test_download_invalid_token(client, params):
    response = await client.get("/api/download", params=params)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["code"] == "invalid_token"


@pytest.mark.asyncio
async def test_download_expired_token(client):
    token = codec.encode(YouTubeSource(format=OutputFormat.MP3, video_id="dQw4w9WgXcQ"), issued_at=0)

    response = await client.get("/api/download", params={"source": token})

    assert response.status_code == 400
    assert response.json()["code"] == "token_expired"


@pytest.mark.asyncio
async def test_download_proxies_tiktok(client, media_cdn):
    payload = b"\x00\x00\x00\x18ftypisom" + b"v" * 100_000
    seen = []

    def cdn(request):
        seen.append(request)
        return httpx.Response(200, content=chunked(payload), headers={"content-type": "video/mp4"})

    media_cdn(cdn)
    token = encode_source(TikTokSource(format=OutputFormat.MP4, media_url="https://v16.example.com/hd.mp4"))

    response = await client.get("/api/download", params={"source": token, "title": "Dance clip!"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "video/mp4"
    assert response.headers["content-disposition"].startswith('attachment; filename="Dance-clip.mp4"')
    assert response.headers["cache-control"] == "no-store"
    assert response.content == payload
    assert str(seen[0].url) == "https://v16.example.com/hd.mp4"
    assert seen[0].headers["user-agent"] == config.tiktok.user_agent


@pytest.mark.asyncio
async def test_download_title_fallback(client, media_cdn):
    media_cdn(lambda request: httpx.Response(200, content=chunked(b"ID3mp3data")))
    token = encode_source(TikTokSource(format=OutputFormat.MP3, media_url="https://sf16.example.com/m.mp3"))

    response = await client.get("/api/download", params={"source": token, "title": "???"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"
    assert 'filename="tiktok-audio-' in response.headers["content-disposition"]


@pytest.mark.asyncio
async def test_download_cdn_failure_before_bytes(client, media_cdn):
    media_cdn(lambda request: httpx.Response(403, content=b"expired"))
    token = encode_source(TikTokSource(format=OutputFormat.MP4, media_url="https://v16.example.com/hd.mp4"))

    response = await client.get("/api/download", params={"source": token})

    assert response.status_code == 502
    assert response.json()["code"] == "upstream_unavailable"


@pytest.mark.asyncio
async def test_download_blocks_internal_media_url(client, monkeypatch):
    monkeypatch.setattr(config.security, "enable_ssrf_protection", True)
    token = encode_source(TikTokSource(format=OutputFormat.MP4, media_url="http://127.0.0.1:8080/admin"))

    response = await client.get("/api/download", params={"source": token})

    assert response.status_code == 403
    assert response.json()["code"] == "blocked_url"


@pytest.mark.asyncio
async def test_download_without_ffmpeg(client, tools_missing):
    token = encode_source(YouTubeSource(format=OutputFormat.MP3, video_id="dQw4w9WgXcQ"))

    response = await client.get("/api/download", params={"source": token})

    assert response.status_code == 503
    assert response.json()["code"] == "tool_unavailable"
    assert "ffmpeg" in response.json()["error"]


YTDLP_AUDIO = json.dumps({
    "id": "dQw4w9WgXcQ",
    "title": "Never Gonna Give You Up",
    "url": "https://rr1.example.com/videoplayback?itag=251",
    "vcodec": "none",
    "acodec": "opus",
    "http_headers": {"User-Agent": "yt-dlp UA"},
}).encode()


@pytest.mark.asyncio
async def test_download_youtube_transcodes(client, tools_available, monkeypatch):
    specs = []

    def build(spec):
        specs.append(spec)
        return python_cmd("import sys; sys.stdout.buffer.write(b'ID3' + b'a' * 5000); sys.stdout.flush()")

    monkeypatch.setattr(download.download_service, "youtube", YouTubeResolver(FakeExecutor(YTDLP_AUDIO)))
    monkeypatch.setattr(FFmpegCommandBuilder, "build", staticmethod(build))
    token = encode_source(YouTubeSource(format=OutputFormat.MP3, video_id="dQw4w9WgXcQ"))

    response = await client.get("/api/download", params={"source": token, "title": "Never-Gonna-Give-You-Up"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"
    assert response.headers["content-disposition"].startswith('attachment; filename="Never-Gonna-Give-You-Up.mp3"')
    assert response.content == b"ID3" + b"a" * 5000

    spec = specs[0]
    assert spec.inputs[0].url == "https://rr1.example.com/videoplayback?itag=251"
    assert spec.inputs[0].headers == {"User-Agent": "yt-dlp UA"}
    assert spec.maps == ((0, "a:0"),)


@pytest.mark.asyncio
async def test_download_transcoder_fails_before_bytes(client, tools_available, monkeypatch):
    monkeypatch.setattr(download.download_service, "youtube", YouTubeResolver(FakeExecutor(YTDLP_AUDIO)))
    monkeypatch.setattr(
        FFmpegCommandBuilder, "build",
        staticmethod(lambda spec: python_cmd("import sys; sys.exit(1)")),
    )
    token = encode_source(YouTubeSource(format=OutputFormat.MP3, video_id="dQw4w9WgXcQ"))

    response = await client.get("/api/download", params={"source": token})

    assert response.status_code == 502
    assert response.json()["code"] == "transcode_failed"


FAIL_AFTER_BYTES = "import sys; sys.stdout.buffer.write(b'ID3partial'); sys.stdout.flush(); sys.exit(1)"


@pytest.fixture
def failing_transcoder(tools_available, monkeypatch):
    """YouTube download whose transcoder exits non-zero after its first bytes"""
    monkeypatch.setattr(download.download_service, "youtube", YouTubeResolver(FakeExecutor(YTDLP_AUDIO)))
    monkeypatch.setattr(FFmpegCommandBuilder, "build", staticmethod(lambda spec: python_cmd(FAIL_AFTER_BYTES)))
    return encode_source(YouTubeSource(format=OutputFormat.MP3, video_id="dQw4w9WgXcQ"))


@pytest.mark.asyncio
async def test_transcoder_failure_after_bytes_never_ends_the_body(failing_transcoder):
    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.4"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/api/download",
        "raw_path": b"/api/download",
        "root_path": "",
        "query_string": urlencode({"source": failing_transcoder}).encode(),
        "headers": [(b"host", b"test")],
        "client": ("127.0.0.1", 50000),
        "server": ("test", 80),
    }
    messages = []

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message):
        messages.append(message)

    with pytest.raises(Exception):
        await app(scope, receive, send)

    assert messages[0]["type"] == "http.response.start"
    assert messages[0]["status"] == 200
    bodies = [m for m in messages if m["type"] == "http.response.body"]
    assert b"".join(m.get("body", b"") for m in bodies) == b"ID3partial"
    # The closing frame would make a truncated file look complete
    assert all(m.get("more_body", False) for m in bodies)


@pytest.fixture
async def live_server():
    """The app behind a real uvicorn server on a free local port"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    server = uvicorn.Server(uvicorn.Config(app, http="h11", lifespan="off", log_config=None))
    task = asyncio.create_task(server.serve(sockets=[sock]))
    while not server.started:
        if task.done():
            await task
            pytest.fail("uvicorn stopped before serving")
        await asyncio.sleep(0.05)
    yield f"http://127.0.0.1:{port}"
    server.should_exit = True
    await task
    sock.close()


@pytest.mark.asyncio
async def test_transcoder_failure_after_bytes_drops_the_connection(failing_transcoder, live_server):
    received = []

    async with httpx.AsyncClient(base_url=live_server) as ac:
        async with ac.stream("GET", "/api/download", params={"source": failing_transcoder}) as response:
            assert response.status_code == 200
            assert response.headers["content-type"] == "audio/mpeg"
            with pytest.raises(httpx.RemoteProtocolError):
                async for chunk in response.aiter_raw():
                    received.append(chunk)

    assert b"".join(received) == b"ID3partial"


@pytest.mark.asyncio
async def test_request_id_is_generated(client):
    response = await client.get("/api/download")

    assert response.status_code == 400
    assert len(response.headers["x-request-id"]) == 12


@pytest.fixture
def public_dns(monkeypatch):
    """SSRF checks on, with every hostname resolving to a public address"""
    async def resolve(hostname):
        return ["93.184.216.34"]

    monkeypatch.setattr(config.security, "enable_ssrf_protection", True)
    monkeypatch.setattr(SecurityValidator, "_resolve", staticmethod(resolve))
    clear_resolution_cache()
    yield
    clear_resolution_cache()


def redirect_to_admin(seen):
    def cdn(request):
        seen.append(str(request.url))
        if request.url.host == "v16.example.com":
            return httpx.Response(302, headers={"Location": "http://127.0.0.1:8080/admin"})
        return httpx.Response(200, content=chunked(b"internal-secret"))

    return cdn


@pytest.mark.asyncio
async def test_download_refuses_cdn_redirect_to_loopback(client, media_cdn, public_dns):
    seen = []
    media_cdn(redirect_to_admin(seen))
    token = encode_source(TikTokSource(format=OutputFormat.MP4, media_url="https://v16.example.com/hd.mp4"))

    response = await client.get("/api/download", params={"source": token})

    assert response.status_code == 403
    assert response.json()["code"] == "blocked_url"
    assert seen == ["https://v16.example.com/hd.mp4"]


@pytest.mark.asyncio
async def test_transcode_refuses_cdn_redirect_to_loopback(client, media_cdn, public_dns, tools_available):
    seen = []
    media_cdn(redirect_to_admin(seen))
    token = encode_source(TikTokSource(format=OutputFormat.MP3, media_url="https://v16.example.com/hd.mp4"))

    response = await client.get("/api/download", params={"source": token, "transcode": "true"})

    assert response.status_code == 403
    assert response.json()["code"] == "blocked_url"
    assert seen == ["https://v16.example.com/hd.mp4"]
