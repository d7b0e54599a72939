import asyncio
import ipaddress
import logging
import socket
import time
from enum import Enum, auto
from typing import Dict, List, Tuple, Union
from urllib.parse import urlparse

from clipdrop.config.settings import config
from clipdrop.core.errors import ApiError, ErrorCode

logger = logging.getLogger(__name__)

# Resolved verdicts per host, kept in process memory
RESOLUTION_CACHE_TTL = 300
RESOLUTION_CACHE_MAX = 1024
_cache: Dict[str, Tuple[float, "UrlValidationResult"]] = {}

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class UrlValidationResult(Enum):
    """URL validation result without throwing exceptions"""
    OK = auto()
    BLOCKED = auto()
    INVALID = auto()


class SecurityValidator:
    """
    Decide whether a media URL recovered from a download token may be fetched.

    Tokens are signed, but the media URL inside them came from a third-party
    provider; anything resolving into loopback, private, link-local or
    multicast space is refused before the server connects to it.
    """

    @staticmethod
    def check_address(ip: IPAddress) -> UrlValidationResult:
        if ip.is_link_local or ip.is_multicast:
            return UrlValidationResult.BLOCKED
        if ip.is_loopback:
            return UrlValidationResult.OK if config.security.allow_localhost else UrlValidationResult.BLOCKED
        if ip.is_private and not config.security.allow_private_ips:
            return UrlValidationResult.BLOCKED
        return UrlValidationResult.OK

    @staticmethod
    async def _resolve(hostname: str) -> List[str]:
        addr_info = await asyncio.to_thread(socket.getaddrinfo, hostname, None)
        return [info[4][0] for info in addr_info]

    @staticmethod
    async def validate_url(url: str) -> UrlValidationResult:
        try:
            parsed = urlparse(url)
            hostname = parsed.hostname
        except ValueError:
            return UrlValidationResult.INVALID

        if parsed.scheme not in ("http", "https") or not hostname:
            return UrlValidationResult.INVALID

        if not config.security.enable_ssrf_protection:
            return UrlValidationResult.OK

        try:
            # IP literals need no lookup
            return SecurityValidator.check_address(ipaddress.ip_address(hostname))
        except ValueError:
            pass

        cached = _cache.get(hostname)
        if cached:
            if cached[0] > time.monotonic():
                return cached[1]
            del _cache[hostname]

        try:
            addresses = await SecurityValidator._resolve(hostname)
        except socket.gaierror:
            # Unresolvable: the fetch itself reports the failure
            return UrlValidationResult.OK

        result = UrlValidationResult.OK
        for address in addresses:
            try:
                # Scoped IPv6 addresses come back as "fe80::1%eth0"
                ip = ipaddress.ip_address(address.split("%")[0])
            except ValueError:
                result = UrlValidationResult.INVALID
                break
            result = SecurityValidator.check_address(ip)
            if result != UrlValidationResult.OK:
                logger.warning(f"Refusing media host {hostname}: resolves to {address}")
                break

        _remember(hostname, result)
        return result

    @staticmethod
    async def ensure_allowed(url: str) -> None:
        """validate_url() as an ApiError for the download handlers"""
        result = await SecurityValidator.validate_url(url)
        if result == UrlValidationResult.BLOCKED:
            raise ApiError(ErrorCode.BLOCKED_URL, "media URL resolves to a blocked address")
        if result == UrlValidationResult.INVALID:
            raise ApiError(ErrorCode.INVALID_TOKEN, "media URL in token is not a valid http(s) URL")


def _remember(hostname: str, result: UrlValidationResult) -> None:
    now = time.monotonic()
    if len(_cache) >= RESOLUTION_CACHE_MAX:
        for host in [host for host, (expires, _) in _cache.items() if expires <= now]:
            del _cache[host]
    while len(_cache) >= RESOLUTION_CACHE_MAX:
        # Oldest insertion first
        del _cache[next(iter(_cache))]
    _cache[hostname] = (now + RESOLUTION_CACHE_TTL, result)


def clear_resolution_cache() -> None:
    _cache.clear()
