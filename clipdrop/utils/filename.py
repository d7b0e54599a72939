import re
import unicodedata
from typing import Optional
from urllib.parse import quote

from clipdrop.utils.hash import hash_stable

MAX_FILENAME_LENGTH = 80


def sanitize_filename(
    name: Optional[str],
    prefix: str = "clipdrop",
    seed: str = "",
    max_length: int = MAX_FILENAME_LENGTH,
) -> str:
    """
    Reduce a title to a safe download stem.
    Accents are folded, punctuation dropped and whitespace joined with hyphens.
    Empty results fall back to ``<prefix>-<hash of seed>``.
    """
    name = unicodedata.normalize("NFKD", name or "")
    name = re.sub(r"[^\w\s-]", "", name).strip()
    name = re.sub(r"\s+", "-", name)[:max_length].strip("-")

    if not name:
        return f"{prefix}-{hash_stable(seed or prefix, length=6)}"
    return name


def content_disposition(stem: str, ext: str) -> str:
    """Attachment header with an ASCII fallback and the UTF-8 name"""
    filename = f"{stem}.{ext}"
    ascii_name = filename.encode("ascii", "ignore").decode("ascii").replace('"', "")
    if ascii_name == f".{ext}":
        ascii_name = f"download.{ext}"
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"
