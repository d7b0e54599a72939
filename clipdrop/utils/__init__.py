from .filename import content_disposition, sanitize_filename
from .hash import hash_stable

__all__ = ["content_disposition", "hash_stable", "sanitize_filename"]
