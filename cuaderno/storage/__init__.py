"""Local and remote blob storage used by the tree and the sync engine."""

from cuaderno.storage.exceptions import (
    BlobNotFoundError,
    InvalidKeyError,
    StorageError,
)
from cuaderno.storage.local import (
    METADATA_KEY,
    BlobStore,
    LocalDiskBlobStore,
    MemoryBlobStore,
    page_key,
)
from cuaderno.storage.remote import (
    AuthenticationError,
    RemoteAdapter,
    RemoteError,
    RemoteFileMetadata,
    RemoteHandle,
    RemoteNotFoundError,
)

__all__ = [
    # Local
    "BlobStore",
    "LocalDiskBlobStore",
    "MemoryBlobStore",
    "METADATA_KEY",
    "page_key",
    # Remote
    "RemoteAdapter",
    "RemoteHandle",
    "RemoteFileMetadata",
    # Exceptions
    "StorageError",
    "BlobNotFoundError",
    "InvalidKeyError",
    "RemoteError",
    "AuthenticationError",
    "RemoteNotFoundError",
]
