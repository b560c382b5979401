"""
Byte storage for document files.
Local filesystem implementation of the storage collaborator; keys are
content-derived so repeated puts of the same bytes are idempotent.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import structlog

from docledger.config import settings
from docledger.errors import StorageError
from docledger.storage.paths import ensure_parent_dirs

logger = structlog.get_logger(__name__)


class ArtifactStore(ABC):
    """Storage get/put by key."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Load bytes. Raises StorageError when the key cannot be read."""
        ...

    @abstractmethod
    def put(self, key: str, data: bytes) -> str:
        """Store bytes under key. Returns the key."""
        ...

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...


class LocalArtifactStore(ArtifactStore):
    """
    Save and load document bytes on the local filesystem.
    All keys are relative to STORAGE_ROOT.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.STORAGE_ROOT)
        self.root.mkdir(parents=True, exist_ok=True)

    def get(self, key: str) -> bytes:
        full_path = self.root / key
        try:
            return full_path.read_bytes()
        except OSError as e:
            logger.error("storage_read_failed", key=key, error=str(e))
            raise StorageError(f"Could not read stored file: {key}") from e

    def put(self, key: str, data: bytes) -> str:
        try:
            full_path = ensure_parent_dirs(str(self.root), key)
            full_path.write_bytes(data)
        except OSError as e:
            logger.error("storage_write_failed", key=key, error=str(e))
            raise StorageError(f"Could not store file: {key}") from e
        logger.info("file_stored", key=key, size_bytes=len(data))
        return key

    def exists(self, key: str) -> bool:
        return (self.root / key).exists()

    def delete(self, key: str) -> bool:
        """Delete a stored file. Returns True if it existed."""
        full_path = self.root / key
        if full_path.exists():
            full_path.unlink()
            logger.info("file_deleted", key=key)
            return True
        return False
