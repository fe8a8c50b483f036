"""Remote blob store interface.

A remote adapter is a thin client over a file-hosting service that exposes
folder/file CRUD. The sync engine only ever uses one root container holding
the ``metadata`` manifest and ``page-<id>`` content files.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime


class RemoteError(Exception):
    """A remote call failed (network, server or protocol error)."""


class AuthenticationError(RemoteError):
    """The remote rejected the stored credential (expired or revoked)."""


class RemoteNotFoundError(RemoteError):
    """The requested remote file or folder does not exist."""


@dataclass
class RemoteHandle:
    """A file or folder found by name."""

    id: str
    name: str


@dataclass
class RemoteFileMetadata:
    """Service-level metadata for a remote file."""

    id: str
    version: str | None = None
    modified_time: datetime | None = None
    name: str | None = None


class RemoteAdapter(ABC):
    """Folder/file CRUD against a remote blob store."""

    @abstractmethod
    async def find_by_name(
        self, name: str, parent_id: str | None = None
    ) -> RemoteHandle | None:
        """Find a non-trashed file or folder by exact name.

        Args:
            name: File or folder name
            parent_id: Restrict the lookup to this folder (optional)

        Returns:
            First matching handle, or None
        """

    @abstractmethod
    async def create_folder(self, name: str, parent_id: str | None = None) -> str:
        """Create a folder and return its id."""

    @abstractmethod
    async def create_file(self, name: str, content: bytes, parent_id: str) -> str:
        """Create a file inside ``parent_id`` and return its id."""

    @abstractmethod
    async def update_file(self, file_id: str, content: bytes) -> None:
        """Overwrite the content of an existing file.

        Raises:
            RemoteNotFoundError: If the file does not exist
        """

    @abstractmethod
    async def get_file_content(self, file_id: str) -> bytes:
        """Download a file's content.

        Raises:
            RemoteNotFoundError: If the file does not exist
        """

    @abstractmethod
    async def delete_file(self, file_id: str) -> None:
        """Delete a file or folder (folders recursively)."""

    @abstractmethod
    async def get_metadata(self, file_id: str) -> RemoteFileMetadata:
        """Return version and modification time for a file or folder.

        Raises:
            RemoteNotFoundError: If the id does not resolve
        """

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
