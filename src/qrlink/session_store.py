"""Credential staging storage keyed by lineage id.

This module provides:
- FileSessionStore: one blob file per lineage under a private directory
- MemorySessionStore: in-process store for tests and ephemeral runs
- StoreCredentialHandle: the handle a link provider persists through

Security features:
- File permissions (600 for files, 700 for directory)
- Lineage ID validation (prevent path traversal)
"""

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Optional, Protocol

from qrlink.errors import StorageError

__all__ = [
    "FileSessionStore",
    "MemorySessionStore",
    "SessionStore",
    "StoreCredentialHandle",
]

logger = logging.getLogger(__name__)

# Valid lineage ID pattern: alphanumeric, hyphens, underscores
LINEAGE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


class SessionStore(Protocol):
    """Protocol for credential staging storage."""

    async def load(self, lineage_id: str) -> Optional[bytes]:
        ...

    async def save(self, lineage_id: str, blob: bytes) -> None:
        ...

    async def clear(self, lineage_id: str) -> bool:
        ...


def _validate_lineage_id(lineage_id: str) -> None:
    if not LINEAGE_ID_PATTERN.match(lineage_id):
        raise StorageError(f"Invalid lineage ID: {lineage_id}")


class FileSessionStore:
    """Secure file-based session store.

    Attributes:
        directory: Storage directory path.
    """

    def __init__(self, directory: Path) -> None:
        """Initialize storage.

        Creates directory if it doesn't exist, with secure permissions.

        Args:
            directory: Path to storage directory.
        """
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        os.chmod(self.directory, 0o700)

    def _path(self, lineage_id: str) -> Path:
        return self.directory / f"{lineage_id}.creds"

    async def load(self, lineage_id: str) -> Optional[bytes]:
        """Load the staged blob for a lineage.

        Returns:
            Blob if present, None otherwise.

        Raises:
            StorageError: If the lineage ID is invalid or the file is unreadable.
        """
        _validate_lineage_id(lineage_id)
        path = self._path(lineage_id)
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {path.name}: {e}") from e

    async def save(self, lineage_id: str, blob: bytes) -> None:
        """Write blob with owner-only permissions, replacing any previous copy."""
        _validate_lineage_id(lineage_id)
        path = self._path(lineage_id)
        tmp_path = path.with_suffix(".tmp")

        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                os.write(fd, blob)
            finally:
                os.close(fd)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to write {path.name}: {e}") from e
        logger.debug(f"Saved credentials for {lineage_id[:8]}... ({len(blob)} bytes)")

    async def clear(self, lineage_id: str) -> bool:
        """Delete staged material.

        Returns:
            True if deleted, False if nothing was stored.
        """
        _validate_lineage_id(lineage_id)
        path = self._path(lineage_id)
        if path.exists():
            try:
                path.unlink()
            except OSError as e:
                raise StorageError(f"Failed to delete {path.name}: {e}") from e
            logger.debug(f"Cleared credentials for {lineage_id[:8]}...")
            return True
        return False


class MemorySessionStore:
    """Dict-backed session store."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def load(self, lineage_id: str) -> Optional[bytes]:
        return self._blobs.get(lineage_id)

    async def save(self, lineage_id: str, blob: bytes) -> None:
        self._blobs[lineage_id] = bytes(blob)

    async def clear(self, lineage_id: str) -> bool:
        return self._blobs.pop(lineage_id, None) is not None

    def __contains__(self, lineage_id: str) -> bool:
        return lineage_id in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


class StoreCredentialHandle:
    """Credential handle bound to one lineage in a session store.

    Saves are serialized so a burst of provider updates lands in order.
    """

    def __init__(self, store: SessionStore, lineage_id: str, initial: Optional[bytes]):
        self._store = store
        self._lineage_id = lineage_id
        self._initial = initial
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, store: SessionStore, lineage_id: str) -> "StoreCredentialHandle":
        """Load the current blob and return a handle around it."""
        initial = await store.load(lineage_id)
        return cls(store, lineage_id, initial)

    @property
    def initial(self) -> Optional[bytes]:
        return self._initial

    async def save(self, blob: bytes) -> None:
        async with self._lock:
            await self._store.save(self._lineage_id, blob)
