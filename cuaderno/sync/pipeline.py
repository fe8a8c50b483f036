"""
Merge and commit pipeline.

One pass runs strictly in order:

A. safe pulls: download page content, copy remote records into the merge
   buffer
B. safe pushes: upload page content, bump versions and clear dirty flags
C. tombstones: union both sides and strip tombstoned entities
D. guard: refetch the remote manifest and abort with ``RemoteChangedError``
   if anything advanced since classification
E. commit: write the merged manifest remotely (only when something needs
   publishing), record self-push markers for the published page versions
   and commit the buffer to the tree

Pulls and pushes within a phase run concurrently.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from ..storage.exceptions import BlobNotFoundError
from ..storage.local import METADATA_KEY, BlobStore, page_key
from ..storage.remote import RemoteAdapter, RemoteError, RemoteNotFoundError
from ..tree.models import EntityKind, Manifest
from ..tree.tree import MetadataTree, TreeSnapshot
from .classifier import SyncItem, SyncPlan, classify
from .conflicts import ConflictSet
from .exceptions import RemoteChangedError
from .oplog import SyncOperationLog

logger = logging.getLogger(__name__)

DEFAULT_ROOT_FOLDER_NAME = "Cuaderno"


class RemoteWorkspace:
    """The single remote root container and the files inside it."""

    def __init__(
        self,
        adapter: RemoteAdapter,
        *,
        root_folder_name: str = DEFAULT_ROOT_FOLDER_NAME,
        root_id_file: Path | None = None,
    ):
        self.adapter = adapter
        self.root_folder_name = root_folder_name
        self.root_id_file = Path(root_id_file) if root_id_file else None
        self.root_id: str | None = None
        self._file_ids: dict[str, str] = {}

        if self.root_id_file is not None and self.root_id_file.exists():
            self.root_id = self.root_id_file.read_text().strip() or None

    def _remember_root(self, root_id: str | None) -> None:
        self.root_id = root_id
        self._file_ids.clear()
        if self.root_id_file is None:
            return
        if root_id is None:
            self.root_id_file.unlink(missing_ok=True)
        else:
            self.root_id_file.parent.mkdir(parents=True, exist_ok=True)
            self.root_id_file.write_text(root_id)

    async def ensure_root(self) -> str:
        """Return the root container id, validating or creating it.

        A cached id that no longer resolves is discarded and the root is
        looked up by name, or created.
        """
        if self.root_id is not None:
            try:
                await self.adapter.get_metadata(self.root_id)
                return self.root_id
            except RemoteNotFoundError:
                logger.warning(f"Stale remote root id {self.root_id}; looking it up again")
                self._remember_root(None)

        handle = await self.adapter.find_by_name(self.root_folder_name)
        if handle is not None:
            root_id = handle.id
        else:
            root_id = await self.adapter.create_folder(self.root_folder_name)
            logger.info(f"Created remote root {self.root_folder_name!r}")
        self._remember_root(root_id)
        return root_id

    async def _find(self, name: str) -> str | None:
        cached = self._file_ids.get(name)
        if cached is not None:
            return cached
        root_id = self.root_id or await self.ensure_root()
        handle = await self.adapter.find_by_name(name, root_id)
        if handle is None:
            return None
        self._file_ids[name] = handle.id
        return handle.id

    async def fetch_manifest(self) -> tuple[Manifest | None, str | None]:
        """
        Download and parse the remote manifest.

        Returns:
            ``(manifest, file_id)``, or ``(None, None)`` if the root holds no
            manifest yet

        Raises:
            RemoteError: If the download fails or the document is unreadable
        """
        # Always look the manifest up; another device may have created it
        self._file_ids.pop(METADATA_KEY, None)
        file_id = await self._find(METADATA_KEY)
        if file_id is None:
            return None, None

        content = await self.adapter.get_file_content(file_id)
        try:
            return Manifest.from_json(content), file_id
        except (ValidationError, json.JSONDecodeError) as e:
            raise RemoteError(f"Remote manifest is unreadable: {e}") from e

    async def write_manifest(self, manifest: Manifest, file_id: str | None) -> str:
        """Write the manifest (without dirty flags), creating it if needed."""
        content = manifest.to_json(include_dirty=False)
        if file_id is not None:
            await self.adapter.update_file(file_id, content)
        else:
            file_id = await self.adapter.create_file(METADATA_KEY, content, self.root_id)
            self._file_ids[METADATA_KEY] = file_id
        logger.info(f"Wrote remote manifest ({len(content)} bytes)")
        return file_id

    async def assert_unchanged(self, expected: Manifest) -> str:
        """
        Optimistic concurrency guard.

        Refetches the remote manifest and compares it with ``expected``, the
        copy the caller classified against.

        Returns:
            The manifest file id to write to

        Raises:
            RemoteChangedError: If any entity's version advanced, a new entity
                or tombstone appeared, or the manifest disappeared
        """
        current, file_id = await self.fetch_manifest()
        if current is None:
            raise RemoteChangedError("Remote changes detected: manifest disappeared")

        expected_versions = expected.versions()
        for entity_id, version in current.versions().items():
            known = expected_versions.get(entity_id)
            if known is None or version > known:
                raise RemoteChangedError(
                    f"Remote changes detected: {entity_id} is now v{version}"
                )
        if set(current.deleted_item_ids) - set(expected.deleted_item_ids):
            raise RemoteChangedError("Remote changes detected: new deletions")
        return file_id

    async def download_page(self, page_id: str) -> bytes | None:
        """Return a page's remote content, or None if it has none."""
        file_id = await self._find(page_key(page_id))
        if file_id is None:
            return None
        try:
            return await self.adapter.get_file_content(file_id)
        except RemoteNotFoundError:
            self._file_ids.pop(page_key(page_id), None)
            return None

    async def upload_page(self, page_id: str, content: bytes) -> None:
        """Overwrite a page's remote content, creating the file if absent."""
        name = page_key(page_id)
        file_id = await self._find(name)
        if file_id is not None:
            try:
                await self.adapter.update_file(file_id, content)
                return
            except RemoteNotFoundError:
                self._file_ids.pop(name, None)

        root_id = self.root_id or await self.ensure_root()
        self._file_ids[name] = await self.adapter.create_file(name, content, root_id)

    async def has_manifest(self) -> bool:
        self._file_ids.pop(METADATA_KEY, None)
        return await self._find(METADATA_KEY) is not None

    async def delete_root(self) -> None:
        """Delete the whole remote root container."""
        if self.root_id is None:
            return
        await self.adapter.delete_file(self.root_id)
        logger.info(f"Deleted remote root {self.root_id}")
        self._remember_root(None)

    def forget_root(self) -> None:
        self._remember_root(None)


@dataclass
class PassOutcome:
    """What a single pass did."""

    plan: SyncPlan | None = None
    pulled: list[str] = field(default_factory=list)
    pushed: list[str] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)
    remote_written: bool = False
    initial_upload: bool = False
    conflicts: ConflictSet | None = None


class MergePipeline:
    """Runs one classification + merge + commit pass against the remote."""

    def __init__(
        self,
        tree: MetadataTree,
        store: BlobStore,
        workspace: RemoteWorkspace,
        oplog: SyncOperationLog | None = None,
    ):
        self.tree = tree
        self.store = store
        self.workspace = workspace
        self.oplog = oplog

    @property
    def client_id(self) -> str:
        return self.tree.client_id

    def _log(self, op_type: str, item_id: str, status: str, **kwargs) -> None:
        if self.oplog is None:
            return
        try:
            self.oplog.record(op_type, item_id, status, **kwargs)
        except OSError as e:
            logger.warning(f"Could not record {op_type} for {item_id}: {e}")

    async def run(self, snapshot: TreeSnapshot) -> PassOutcome:
        """
        Run one pass over ``snapshot``.

        Args:
            snapshot: Local snapshot taken after the durable flush

        Returns:
            The pass outcome; ``conflicts`` is set when the pass stopped in
            conflict state

        Raises:
            RemoteChangedError: If the guard detected a concurrent write
            RemoteError: If a remote call fails
        """
        await self.workspace.ensure_root()
        remote, _ = await self.workspace.fetch_manifest()
        if remote is None:
            return await self._initial_upload(snapshot)

        local = snapshot.manifest
        plan = classify(local, remote, self.client_id)
        outcome = PassOutcome(plan=plan)
        merged = local.copy_deep()

        for item in plan.local_deletions:
            merged.remove(item.id)
            outcome.discarded.append(item.id)
            if item.kind is EntityKind.PAGE:
                try:
                    await self.store.delete(page_key(item.id))
                except BlobNotFoundError:
                    pass
            self._log("delete_local", item.id, "success", entity_kind=item.kind.value,
                      metadata={"reason": "placeholder"})

        for item in plan.conflicts:
            self._log("conflict", item.id, "conflict", entity_kind=item.kind.value,
                      metadata={"local_version": item.local_version,
                                "remote_version": item.remote_version})

        # Phase A
        outcome.pulled = await self._pull(plan.safe_pulls, remote, merged)

        # Phase B
        outcome.pushed = await self._push(plan.safe_pushes, merged)

        # Phase C
        merged.merge_tombstones(remote.deleted_item_ids)
        stripped = merged.strip_tombstoned()
        if stripped:
            logger.info(f"Removed {len(stripped)} entities deleted on another device")
        new_deletions = set(merged.deleted_item_ids) - set(remote.deleted_item_ids)

        # Active pointer: last writer wins, unless ours points at a discarded placeholder
        discarded_active = local.active_notebook_id in outcome.discarded
        local_active_newer = (
            local.active_state_updated_at > remote.active_state_updated_at
            and not discarded_active
        )
        remote_active_newer = remote.active_state_updated_at > local.active_state_updated_at
        if discarded_active or remote_active_newer:
            merged.apply_active_state(remote.active_state)

        needs_write = bool(outcome.pushed or new_deletions or local_active_newer)

        if plan.has_conflicts:
            smart_remote = self._smart_remote(remote, merged, outcome.pushed)
            if needs_write:
                file_id = await self.workspace.assert_unchanged(remote)
                await self.workspace.write_manifest(smart_remote, file_id)
                outcome.remote_written = True
                self._record_self_pushes(merged, outcome.pushed)
            self.tree.commit(merged, snapshot)
            outcome.conflicts = ConflictSet(
                items=list(plan.conflicts),
                local=self.tree.manifest.copy_deep(),
                remote=smart_remote,
            )
            logger.warning(f"{len(plan.conflicts)} conflicts need resolution")
            return outcome

        # Phase D + E
        if needs_write:
            file_id = await self.workspace.assert_unchanged(remote)
            await self.workspace.write_manifest(merged, file_id)
            outcome.remote_written = True
            self._record_self_pushes(merged, outcome.pushed)
        self.tree.commit(merged, snapshot)
        logger.info(
            f"Sync pass committed: {len(outcome.pulled)} pulled, "
            f"{len(outcome.pushed)} pushed"
        )
        return outcome

    def _smart_remote(
        self, remote: Manifest, merged: Manifest, pushed: list[str]
    ) -> Manifest:
        smart = remote.copy_deep()
        for entity_id in pushed:
            entity = merged.find(entity_id)
            if entity is not None:
                smart.put(entity.model_copy(update={"dirty": False}, deep=True))
        smart.merge_tombstones(merged.deleted_item_ids)
        smart.strip_tombstoned()
        smart.apply_active_state(merged.active_state)
        smart.client_id = self.client_id
        return smart

    def _record_self_pushes(self, merged: Manifest, pushed: list[str]) -> None:
        # Only versions the remote manifest now references count as our own
        for entity_id in pushed:
            page = merged.pages.get(entity_id)
            if page is not None:
                self.tree.record_self_push(entity_id, page.version)

    async def _pull(
        self, items: list[SyncItem], remote: Manifest, merged: Manifest
    ) -> list[str]:
        async def pull_one(item: SyncItem) -> str | None:
            theirs = remote.get(item.kind, item.id)
            if theirs is None:
                return None

            if item.kind is EntityKind.PAGE:
                if self.tree.is_self_authored(item.id, theirs.version):
                    logger.debug(f"Page {item.id} v{theirs.version} is our own push")
                else:
                    content = await self.workspace.download_page(item.id)
                    if content is None:
                        logger.warning(f"Remote content for page {item.id} is missing")
                    else:
                        await self.store.put(page_key(item.id), content)

            merged.put(theirs.model_copy(update={"dirty": False}, deep=True))
            self._log("pull", item.id, "success", entity_kind=item.kind.value,
                      metadata={"version": theirs.version})
            return item.id

        results = await asyncio.gather(*(pull_one(item) for item in items))
        return [entity_id for entity_id in results if entity_id is not None]

    async def _push(self, items: list[SyncItem], merged: Manifest) -> list[str]:
        async def push_one(item: SyncItem) -> str | None:
            entity = merged.get(item.kind, item.id)
            if entity is None:
                return None

            if item.kind is EntityKind.PAGE:
                content = await self.store.get(page_key(item.id))
                if content is None:
                    logger.warning(f"No local content for page {item.id}; push skipped")
                    self._log("push", item.id, "failed", entity_kind="page",
                              error="local content missing")
                    return None
                await self.workspace.upload_page(item.id, content)

            entity.version += 1
            entity.dirty = False
            entity.last_modifier = self.client_id
            entity.is_placeholder = False
            self._log("push", item.id, "success", entity_kind=item.kind.value,
                      metadata={"version": entity.version, "reason": item.reason})
            return item.id

        results = await asyncio.gather(*(push_one(item) for item in items))
        return [entity_id for entity_id in results if entity_id is not None]

    async def _initial_upload(self, snapshot: TreeSnapshot) -> PassOutcome:
        """Seed an empty remote root with every local page and the manifest.

        Entities become clean without a version bump.
        """
        logger.info("Remote root holds no manifest; performing initial upload")
        merged = snapshot.manifest.copy_deep()
        outcome = PassOutcome(initial_upload=True)

        async def upload(page_id: str) -> None:
            content = await self.store.get(page_key(page_id))
            if content is None:
                logger.warning(f"No local content for page {page_id}; uploading metadata only")
                return
            await self.workspace.upload_page(page_id, content)
            self._log("push", page_id, "success", entity_kind="page",
                      metadata={"initial": True, "size": len(content)})
            outcome.pushed.append(page_id)

        await asyncio.gather(*(upload(page_id) for page_id in merged.pages))

        if await self.workspace.has_manifest():
            raise RemoteChangedError("Remote changes detected: manifest created meanwhile")

        for entity in merged.iter_entities():
            entity.dirty = False
        await self.workspace.write_manifest(merged, None)
        outcome.remote_written = True

        self.tree.commit(merged, snapshot)
        logger.info(f"Initial upload complete ({len(outcome.pushed)} pages)")
        return outcome
