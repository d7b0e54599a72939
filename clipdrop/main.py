import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from clipdrop.api import convert, download, health
from clipdrop.config.settings import config
from clipdrop.core.errors import ApiError, ErrorCode, StreamAbortedError
from clipdrop.core.logging import log_error, log_warning, setup_logging
from clipdrop.core.state import probe_tools
from clipdrop.i18n import i18n
from clipdrop.infra.http import close_http_client, init_http_client
from clipdrop.models.response import ErrorResponse
from clipdrop.utils.locale import get_locale

logger = logging.getLogger(__name__)

app = FastAPI(
    title=config.api.title,
    description=config.api.description,
    version=config.api.version,
    docs_url="/docs" if config.api.debug else None,
    redoc_url=None
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Request-ID"],
)


class RequestIdMiddleware:
    """
    Tag every request with an id and echo it in the X-Request-ID header.

    Plain ASGI: an exception raised by a streaming body has to reach the
    server untouched, so the connection is dropped instead of the body being
    closed as if it were complete.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get("x-request-id") or uuid.uuid4().hex[:12]
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)["X-Request-ID"] = request_id
            await send(message)

        await self.app(scope, receive, send_with_request_id)


app.add_middleware(RequestIdMiddleware)


def error_response(request: Request, code: ErrorCode, status_code: int, **params) -> JSONResponse:
    locale = get_locale(request.headers.get("accept-language"))
    body = ErrorResponse(error=i18n.get(f"error.{code.value}", locale=locale, **params), code=code.value)
    headers = {}
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        headers["X-Request-ID"] = request_id
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    message = f"{exc.code.value} ({exc.status_code}): {exc.detail or exc.code.value}"
    if exc.is_client_error:
        log_warning(request, message)
    else:
        log_error(request, message)
    return error_response(request, exc.code, exc.status_code, **exc.params)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    log_warning(request, f"Invalid request parameters: {exc.errors()}")
    # Only /api/download takes typed query parameters
    code = ErrorCode.INVALID_TOKEN if request.url.path.startswith("/api/download") else ErrorCode.MISSING_URL
    return error_response(request, code, 400)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "unknown")
    if isinstance(exc, StreamAbortedError):
        # Body already started; the response below is never sent
        logger.warning(f"[{request_id}] Connection aborted mid-stream: {exc}")
    else:
        logger.exception(f"[{request_id}] Unhandled error: {exc}")
    return error_response(request, ErrorCode.INTERNAL_ERROR, 500)


# Routes
app.include_router(health.router, tags=["Health"])
app.include_router(convert.router, tags=["Convert"])
app.include_router(download.router, tags=["Download"])


@app.on_event("startup")
async def startup_event():
    setup_logging()
    await probe_tools()
    await init_http_client()


@app.on_event("shutdown")
async def shutdown_event():
    await close_http_client()
