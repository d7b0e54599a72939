from typing import List, Optional, Tuple
from urllib.parse import urlparse

from clipdrop.config.settings import config


def _parse_accept_language(header: str) -> List[str]:
    """Primary language tags ordered by q weight, header order kept on ties"""
    weighted: List[Tuple[float, int, str]] = []
    for position, item in enumerate(header.split(",")):
        parts = item.strip().split(";")
        tag = parts[0].split("-")[0].strip().lower()
        if not tag:
            continue
        weight = 1.0
        for param in parts[1:]:
            name, _, value = param.strip().partition("=")
            if name == "q":
                try:
                    weight = float(value)
                except ValueError:
                    weight = 0.0
        if weight > 0:
            weighted.append((-weight, position, tag))
    return [tag for _, _, tag in sorted(weighted)]


def get_locale(accept_language: Optional[str] = None) -> str:
    """Extract locale from Accept-Language header"""
    if not accept_language:
        return config.i18n.default_locale

    for locale in _parse_accept_language(accept_language):
        if locale in config.i18n.supported_locales:
            return locale

    return config.i18n.default_locale


def safe_url_for_log(url: str) -> str:
    """Safe URL for logging; media URLs carry signatures in the query"""
    try:
        parsed = urlparse(url)
        base_url = f"{parsed.scheme}://{parsed.netloc}{parsed.path}"

        if parsed.query:
            return f"{base_url}?..."

        return base_url
    except ValueError:
        return "invalid_url"
