import hashlib


def hash_stable(data: str, length: int = 16) -> str:
    """Short hex fingerprint, identical across processes and restarts"""
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:length]
