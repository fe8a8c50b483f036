"""
Local durable blob stores.

The tree keeps its whole manifest under the ``metadata`` key and each page's
canvas snapshot under ``page-<id>``. Stores are flat key/value maps; keys
never contain path separators.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from .exceptions import BlobNotFoundError, InvalidKeyError, StorageError

logger = logging.getLogger(__name__)

METADATA_KEY = "metadata"
PAGE_KEY_PREFIX = "page-"


def page_key(page_id: str) -> str:
    """Return the blob key holding a page's content."""
    return f"{PAGE_KEY_PREFIX}{page_id}"


class BlobStore(ABC):
    """
    Abstract base class for local durable blob stores.

    All methods are coroutines so disk and in-memory implementations can be
    swapped without touching callers.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """
        Read a blob.

        Args:
            key: Blob key

        Returns:
            Blob bytes, or None if the key does not exist

        Raises:
            StorageError: If reading fails
        """

    @abstractmethod
    async def put(self, key: str, content: bytes) -> None:
        """
        Write a blob, replacing any previous content.

        Raises:
            StorageError: If writing fails
        """

    @abstractmethod
    async def list(self) -> list[str]:
        """Return all keys in the store, sorted."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """
        Delete a blob.

        Raises:
            BlobNotFoundError: If the key does not exist
        """


class LocalDiskBlobStore(BlobStore):
    """
    One-file-per-key store rooted at a directory.

    Writes are atomic (temp file + rename) and hold an exclusive lock while
    writing; reads take a shared lock.
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path).expanduser().resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _validate_key(self, key: str) -> Path:
        if not key:
            raise InvalidKeyError("Key cannot be empty")
        if "/" in key or "\\" in key or key in (".", ".."):
            raise InvalidKeyError(f"Key must be a plain file name: {key}")
        if key.startswith("."):
            # dot-files hold store-private state (temp files, logs)
            raise InvalidKeyError(f"Key cannot start with '.': {key}")
        return self.base_path / key

    def _read(self, key: str) -> bytes | None:
        full_path = self._validate_key(key)
        if not full_path.exists():
            return None

        try:
            with open(full_path, "rb") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    return f.read()
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def _write(self, key: str, content: bytes) -> None:
        full_path = self._validate_key(key)

        try:
            fd, temp_path = tempfile.mkstemp(
                dir=self.base_path, prefix=f".{key}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    try:
                        f.write(content)
                        f.flush()
                        os.fsync(f.fileno())
                    finally:
                        fcntl.flock(f.fileno(), fcntl.LOCK_UN)

                os.replace(temp_path, full_path)
            except Exception:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
                raise
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

    def _list(self) -> list[str]:
        return sorted(
            p.name
            for p in self.base_path.iterdir()
            if p.is_file() and not p.name.startswith(".")
        )

    def _delete(self, key: str) -> None:
        full_path = self._validate_key(key)
        if not full_path.exists():
            raise BlobNotFoundError(f"Blob not found: {key}")
        try:
            full_path.unlink()
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    async def get(self, key: str) -> bytes | None:
        return await asyncio.to_thread(self._read, key)

    async def put(self, key: str, content: bytes) -> None:
        await asyncio.to_thread(self._write, key, content)
        logger.debug(f"Wrote {key} ({len(content)} bytes)")

    async def list(self) -> list[str]:
        return await asyncio.to_thread(self._list)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)
        logger.debug(f"Deleted {key}")


class MemoryBlobStore(BlobStore):
    """Volatile store used when no data directory is configured."""

    def __init__(self, initial: dict[str, bytes] | None = None):
        self._blobs: dict[str, bytes] = dict(initial or {})

    async def get(self, key: str) -> bytes | None:
        return self._blobs.get(key)

    async def put(self, key: str, content: bytes) -> None:
        if not key:
            raise InvalidKeyError("Key cannot be empty")
        self._blobs[key] = bytes(content)

    async def list(self) -> list[str]:
        return sorted(self._blobs)

    async def delete(self, key: str) -> None:
        try:
            del self._blobs[key]
        except KeyError:
            raise BlobNotFoundError(f"Blob not found: {key}")
