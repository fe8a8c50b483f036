"""Multi-device sync engine for the metadata tree."""

from .auth import CredentialRefresher, GoogleTokenRefresher
from .classifier import SyncItem, SyncPlan, classify
from .conflicts import ConflictResolver, ConflictSet, ConflictSide
from .engine import SyncEngine, SyncStatus
from .exceptions import (
    NoConflictError,
    ReauthenticationRequired,
    RemoteChangedError,
    SyncBusyError,
    SyncError,
)
from .oplog import SyncOperation, SyncOperationLog
from .pipeline import MergePipeline, PassOutcome, RemoteWorkspace

__all__ = [
    "CredentialRefresher",
    "GoogleTokenRefresher",
    "SyncItem",
    "SyncPlan",
    "classify",
    "ConflictResolver",
    "ConflictSet",
    "ConflictSide",
    "SyncEngine",
    "SyncStatus",
    "NoConflictError",
    "ReauthenticationRequired",
    "RemoteChangedError",
    "SyncBusyError",
    "SyncError",
    "SyncOperation",
    "SyncOperationLog",
    "MergePipeline",
    "PassOutcome",
    "RemoteWorkspace",
]
