"""
Content-addressable key generation for document storage.
All keys are relative to STORAGE_ROOT.
"""

import hashlib
from pathlib import Path

_EXTENSIONS = {
    "application/pdf": "pdf",
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/tiff": "tiff",
}


def content_hash(data: bytes) -> str:
    """SHA-256 hash of file content."""
    return hashlib.sha256(data).hexdigest()


def document_key(data: bytes, mime_type: str) -> str:
    """Key for a stored document file. Same bytes always map to the same key."""
    ext = _EXTENSIONS.get(mime_type, "bin")
    return f"documents/{content_hash(data)}.{ext}"


def page_fingerprint(storage_key: str, page_number: int) -> str:
    """Short per-page fingerprint tied to the file the page lives in."""
    return hashlib.sha256(f"{storage_key}:{page_number}".encode("utf-8")).hexdigest()[:16]


def ensure_parent_dirs(root: str, key: str) -> Path:
    """Create parent directories and return the full absolute path."""
    full_path = Path(root) / key
    full_path.parent.mkdir(parents=True, exist_ok=True)
    return full_path
