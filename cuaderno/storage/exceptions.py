"""
Exceptions for local blob storage.
"""


class StorageError(Exception):
    """Base exception for blob storage operations."""


class BlobNotFoundError(StorageError):
    """Raised when a blob key does not exist."""


class InvalidKeyError(StorageError):
    """Raised when a blob key is empty or escapes the storage root."""
