import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from clipdrop.config.settings import config

logger = logging.getLogger(__name__)

LOCALES_DIR = Path(__file__).resolve().parent.parent / "locales"


class I18n:
    """
    Message catalogs loaded from ``clipdrop/locales/<code>.json``.

    Keys are dotted paths into the nested JSON ("error.upstream_timeout").
    A missing key falls back to the default locale, then to the key itself.
    """

    def __init__(self, locales_dir: Path = LOCALES_DIR):
        self.locales_dir = locales_dir
        self.locales: Dict[str, Dict[str, Any]] = {}
        self.default_locale = config.i18n.default_locale
        self.load_locales()

    def load_locales(self) -> None:
        if not self.locales_dir.is_dir():
            logger.warning(f"Locales directory not found at {self.locales_dir}")
            return

        for path in sorted(self.locales_dir.glob("*.json")):
            try:
                self.locales[path.stem] = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Error loading locale {path.stem}: {e}")

    def _candidates(self, locale: Optional[str]) -> List[str]:
        order = [locale, self.default_locale, "en"]
        seen: List[str] = []
        for code in order:
            if code and code in self.locales and code not in seen:
                seen.append(code)
        return seen

    def _lookup(self, catalog: Dict[str, Any], key: str) -> Optional[Any]:
        node: Any = catalog
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def get(self, key: str, locale: Optional[str] = None, **kwargs) -> str:
        """Translated message for ``key``, formatted with ``kwargs``"""
        for code in self._candidates(locale):
            value = self._lookup(self.locales[code], key)
            if value is None:
                continue
            if not isinstance(value, str):
                return str(value)
            try:
                return value.format(**kwargs)
            except (KeyError, IndexError):
                return value
        return key


i18n = I18n()
