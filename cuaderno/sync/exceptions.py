"""Exceptions raised by the sync engine."""


class SyncError(Exception):
    """Base exception for sync failures."""


class RemoteChangedError(SyncError):
    """The remote manifest changed between classification and commit.

    Retryable: the pass wrote nothing to the remote manifest.
    """


class SyncBusyError(SyncError):
    """A pass or resolution was requested while the engine is not idle."""


class NoConflictError(SyncError):
    """``resolve_conflict`` was called with no conflict pending."""


class ReauthenticationRequired(SyncError):
    """The stored credential was rejected and could not be refreshed."""
