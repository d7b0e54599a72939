import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from clipdrop.config.settings import config
from clipdrop.core.errors import ApiError, ErrorCode
from clipdrop.models.internal import SourceToken

SIGNATURE_BYTES = 16
MAX_TOKEN_LENGTH = 8192

_adapter = TypeAdapter(SourceToken)


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    padding_needed = (4 - len(value) % 4) % 4
    return base64.urlsafe_b64decode((value + "=" * padding_needed).encode("ascii"))


def _sign(payload: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()[:SIGNATURE_BYTES]


class SourceTokenCodec:
    """
    Stateless download tokens.

    ``<base64url(json)>.<base64url(hmac)>``: the JSON holds the tagged source
    descriptor plus an issue time. Everything needed by the download phase
    travels with the client; nothing is stored server-side.
    """

    def __init__(self, secret: Optional[str] = None, max_age: Optional[int] = None):
        self._secret = secret
        self._max_age = max_age

    @property
    def secret(self) -> str:
        return self._secret or config.token.secret

    @property
    def max_age(self) -> int:
        return self._max_age or config.token.max_age_seconds

    def encode(self, token: SourceToken, issued_at: Optional[int] = None) -> str:
        body = _adapter.dump_python(token, mode="json")
        body["iat"] = int(issued_at if issued_at is not None else time.time())
        payload = json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return f"{_b64encode(payload)}.{_b64encode(_sign(payload, self.secret))}"

    def decode(self, value: Optional[str], now: Optional[float] = None) -> SourceToken:
        """Validate and decode; every failure is an invalid_token client error"""
        if not value or len(value) > MAX_TOKEN_LENGTH or value.count(".") != 1:
            raise ApiError(ErrorCode.INVALID_TOKEN, "malformed token")

        payload_part, signature_part = value.split(".")
        try:
            payload = _b64decode(payload_part)
            signature = _b64decode(signature_part)
        except (binascii.Error, ValueError):
            raise ApiError(ErrorCode.INVALID_TOKEN, "token is not base64url")

        if not hmac.compare_digest(signature, _sign(payload, self.secret)):
            raise ApiError(ErrorCode.INVALID_TOKEN, "bad token signature")

        try:
            body = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ApiError(ErrorCode.INVALID_TOKEN, "token payload is not JSON")
        if not isinstance(body, dict):
            raise ApiError(ErrorCode.INVALID_TOKEN, "token payload is not an object")

        issued_at = body.pop("iat", None)
        if not isinstance(issued_at, int):
            raise ApiError(ErrorCode.INVALID_TOKEN, "token has no issue time")
        current = now if now is not None else time.time()
        if current - issued_at > self.max_age:
            raise ApiError(ErrorCode.TOKEN_EXPIRED, "token expired")

        try:
            return _adapter.validate_python(body)
        except ValidationError as e:
            raise ApiError(ErrorCode.INVALID_TOKEN, f"token shape: {e.error_count()} errors")


codec = SourceTokenCodec()


def encode_source(token: SourceToken) -> str:
    return codec.encode(token)


def decode_source(value: Optional[str]) -> SourceToken:
    return codec.decode(value)
