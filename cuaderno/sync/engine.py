"""
Sync engine state machine.

    idle -> saving-to-disk -> syncing -> idle | conflict | error

A pass only starts from ``idle`` (a manual pass may also start from
``error``). The pending durable save is awaited before the local snapshot is
taken. A guard abort is retried once after ``retry_delay_seconds``; a second
abort ends in ``error``. An authentication failure triggers one silent
credential refresh before giving up with ``needs_reauthentication`` set.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

from ..storage.exceptions import StorageError
from ..storage.remote import AuthenticationError, RemoteAdapter, RemoteError
from ..tree.persistence import TreePersistence
from ..tree.tree import MetadataTree
from .auth import CredentialRefresher
from .conflicts import ConflictResolver, ConflictSet, ConflictSide
from .exceptions import (
    NoConflictError,
    ReauthenticationRequired,
    RemoteChangedError,
    SyncBusyError,
)
from .oplog import SyncOperationLog
from .pipeline import DEFAULT_ROOT_FOLDER_NAME, MergePipeline, PassOutcome, RemoteWorkspace

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncStatus(str, Enum):
    IDLE = "idle"
    SAVING_TO_DISK = "saving-to-disk"
    SYNCING = "syncing"
    CONFLICT = "conflict"
    ERROR = "error"


StatusListener = Callable[[SyncStatus], None]


class SyncEngine:
    """Coordinates flushes, sync passes, retries and conflict resolution."""

    def __init__(
        self,
        client_id: str,
        tree: MetadataTree,
        persistence: TreePersistence,
        adapter: RemoteAdapter,
        *,
        root_folder_name: str = DEFAULT_ROOT_FOLDER_NAME,
        root_id_file: Path | None = None,
        refresher: CredentialRefresher | None = None,
        oplog: SyncOperationLog | None = None,
        retry_delay_seconds: float = 0.5,
    ):
        if tree.client_id != client_id:
            raise ValueError("Tree and engine must share one client id")

        self.client_id = client_id
        self.tree = tree
        self.persistence = persistence
        self.adapter = adapter
        self.refresher = refresher
        self.oplog = oplog
        self.retry_delay_seconds = retry_delay_seconds

        self.workspace = RemoteWorkspace(
            adapter, root_folder_name=root_folder_name, root_id_file=root_id_file
        )
        self.pipeline = MergePipeline(tree, persistence.store, self.workspace, oplog)
        self.resolver = ConflictResolver(tree, persistence.store, self.workspace, oplog)

        self.status = SyncStatus.IDLE
        self.last_sync_time: datetime | None = None
        self.error: str | None = None
        self.conflicts: ConflictSet | None = None
        self.needs_reauthentication = False
        self.last_outcome: PassOutcome | None = None

        self._listeners: list[StatusListener] = []
        self._retry_task: asyncio.Task | None = None

    # -- observation -----------------------------------------------------

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Call ``listener`` on every status change; returns an unsubscribe."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _set_status(self, status: SyncStatus) -> None:
        if status is self.status:
            return
        logger.debug(f"Sync status {self.status.value} -> {status.value}")
        self.status = status
        for listener in list(self._listeners):
            listener(status)

    @property
    def pending_retry(self) -> asyncio.Task | None:
        """The scheduled automatic retry, if one is waiting."""
        if self._retry_task is not None and not self._retry_task.done():
            return self._retry_task
        return None

    def _fail(self, message: str) -> None:
        logger.error(f"Sync failed: {message}")
        self.error = message
        self._set_status(SyncStatus.ERROR)

    # -- passes ----------------------------------------------------------

    async def sync(self, manual: bool = False) -> PassOutcome | None:
        """
        Run one sync pass.

        Args:
            manual: Caller-triggered pass; allowed to restart from ``error``
                and replaces any scheduled retry

        Returns:
            The pass outcome, or None if the pass did not complete

        Raises:
            SyncBusyError: If a manual pass is requested while another pass
                or a conflict is pending
        """
        if manual and self.status is SyncStatus.ERROR:
            self.error = None
            self._set_status(SyncStatus.IDLE)

        if self.status is not SyncStatus.IDLE:
            if manual:
                raise SyncBusyError(f"Cannot sync while {self.status.value}")
            logger.debug(f"Skipping automatic sync while {self.status.value}")
            return None

        if manual and self.pending_retry is not None:
            self._retry_task.cancel()
            self._retry_task = None

        return await self._run_pass(manual, allow_retry=True)

    async def _run_pass(self, manual: bool, allow_retry: bool) -> PassOutcome | None:
        self._set_status(SyncStatus.SAVING_TO_DISK)
        try:
            await self.persistence.flush_now()
            self._set_status(SyncStatus.SYNCING)
            logger.info(f"Starting {'manual' if manual else 'automatic'} sync pass")
            outcome = await self._with_auth(
                lambda: self.pipeline.run(self.tree.snapshot())
            )
        except RemoteChangedError as e:
            if allow_retry:
                logger.warning(f"{e}; retrying in {self.retry_delay_seconds}s")
                self._set_status(SyncStatus.IDLE)
                self._retry_task = asyncio.create_task(self._retry(manual))
                return None
            self._fail(str(e))
            return None
        except ReauthenticationRequired as e:
            self.needs_reauthentication = True
            self._fail(str(e))
            return None
        except (RemoteError, StorageError) as e:
            self._fail(str(e))
            return None

        self.last_outcome = outcome
        if outcome.conflicts is not None:
            self.conflicts = outcome.conflicts
            self._set_status(SyncStatus.CONFLICT)
            return outcome

        self._finish()
        return outcome

    async def _retry(self, manual: bool) -> None:
        await asyncio.sleep(self.retry_delay_seconds)
        if self.status is not SyncStatus.IDLE:
            logger.debug(f"Dropping automatic retry while {self.status.value}")
            return
        logger.info("Retrying sync after remote change")
        await self._run_pass(manual, allow_retry=False)

    async def _with_auth(self, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except AuthenticationError as e:
            if self.refresher is None:
                raise ReauthenticationRequired(str(e)) from e
            logger.warning("Remote rejected the credential; attempting silent refresh")
            if not await self.refresher.refresh():
                self.refresher.clear()
                raise ReauthenticationRequired("Silent refresh failed; sign in again") from e

        self.needs_reauthentication = False
        try:
            return await call()
        except AuthenticationError as e:
            self.refresher.clear()
            raise ReauthenticationRequired("Credential rejected after refresh") from e

    def _finish(self) -> None:
        self.last_sync_time = datetime.now(timezone.utc)
        self.error = None
        self.needs_reauthentication = False
        self._set_status(SyncStatus.IDLE)
        if self.oplog is not None:
            try:
                self.oplog.prune()
            except OSError as e:
                logger.warning(f"Could not prune operation log: {e}")

    # -- conflicts -------------------------------------------------------

    async def resolve_conflict(self, side: ConflictSide | str) -> None:
        """
        Resolve the pending conflicts by keeping one side for the batch.

        Args:
            side: ``"local"`` or ``"remote"``

        Raises:
            NoConflictError: If the engine is not in conflict state
        """
        if self.status is not SyncStatus.CONFLICT or self.conflicts is None:
            raise NoConflictError("No conflict to resolve")

        conflicts = self.conflicts
        self._set_status(SyncStatus.SYNCING)
        try:
            await self._with_auth(lambda: self.resolver.resolve(conflicts, side))
        except ReauthenticationRequired as e:
            self.needs_reauthentication = True
            self.conflicts = None
            self._fail(str(e))
            return
        except (RemoteError, StorageError, RemoteChangedError) as e:
            self.conflicts = None
            self._fail(f"Failed to resolve conflict: {e}")
            return

        self.conflicts = None
        self.persistence.schedule_flush()
        self._finish()
        logger.info("Conflict resolved")

    # -- lifecycle -------------------------------------------------------

    async def sign_out(self, delete_remote: bool = False) -> None:
        """Disconnect from the remote, optionally deleting the remote data."""
        if self.pending_retry is not None:
            self._retry_task.cancel()
            self._retry_task = None

        if delete_remote:
            try:
                await self.workspace.ensure_root()
                await self.workspace.delete_root()
            except RemoteError as e:
                logger.error(f"Could not delete remote data: {e}")

        self.workspace.forget_root()
        if self.refresher is not None:
            self.refresher.clear()
        self.conflicts = None
        self.error = None
        self._set_status(SyncStatus.IDLE)
        logger.info("Signed out of remote storage")

    async def aclose(self) -> None:
        if self.pending_retry is not None:
            self._retry_task.cancel()
        await self.adapter.aclose()
