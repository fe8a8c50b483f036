"""
Conflict state and batch resolution.

A pass that finds conflicts commits everything else and hands back a
``ConflictSet``. The caller then picks one side for the whole batch:

- ``local``: conflicted entities keep local fields and jump to
  ``remote.version + 1`` so other devices see them as ahead; local content of
  every kept dirty page is uploaded and the manifest is rewritten.
- ``remote``: conflicted entities are replaced by their remote copies and
  remote content is downloaded; local edits to them are discarded.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ..storage.local import BlobStore, page_key
from ..tree.models import EntityKind, Manifest
from ..tree.tree import MetadataTree
from .classifier import SyncItem
from .exceptions import RemoteChangedError
from .oplog import SyncOperationLog

if TYPE_CHECKING:
    from .pipeline import RemoteWorkspace

logger = logging.getLogger(__name__)


class ConflictSide(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class ConflictSet:
    """Unresolved conflicts together with both views of the tree.

    ``remote`` is the "smart remote": the remote manifest with the entities
    this pass already pushed spliced in, so keeping remote does not undo them.
    """

    items: list[SyncItem] = field(default_factory=list)
    local: Manifest = field(default_factory=Manifest)
    remote: Manifest = field(default_factory=Manifest)

    @property
    def ids(self) -> set[str]:
        return {item.id for item in self.items}

    def __len__(self) -> int:
        return len(self.items)


class ConflictResolver:
    """Applies a keep-local or keep-remote decision to a ``ConflictSet``."""

    def __init__(
        self,
        tree: MetadataTree,
        store: BlobStore,
        workspace: "RemoteWorkspace",
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

    async def resolve(self, conflicts: ConflictSet, side: ConflictSide | str) -> None:
        """
        Resolve every conflict in the batch in favour of one side.

        Args:
            conflicts: The pending conflict set
            side: ``"local"`` or ``"remote"``

        Raises:
            RemoteChangedError: If the remote manifest changed while resolving
            RemoteError: If a remote call fails
        """
        side = ConflictSide(side)
        logger.info(f"Resolving {len(conflicts)} conflicts keeping {side.value}")

        if side is ConflictSide.LOCAL:
            await self._keep_local(conflicts)
        else:
            await self._keep_remote(conflicts)

        for item in conflicts.items:
            self._log(
                "resolve",
                item.id,
                "success",
                entity_kind=item.kind.value,
                metadata={"side": side.value},
            )

    async def _fetch_remote(self) -> Manifest:
        remote, _ = await self.workspace.fetch_manifest()
        if remote is None:
            raise RemoteChangedError("Remote manifest disappeared during resolution")
        return remote

    async def _keep_local(self, conflicts: ConflictSet) -> None:
        snapshot = self.tree.snapshot()
        local = snapshot.manifest
        remote = await self._fetch_remote()
        merged = local.copy_deep()
        dead = set(local.deleted_item_ids) | set(remote.deleted_item_ids)

        to_download: list[str] = []
        to_upload: dict[str, bytes] = {}
        contents = {
            page.id: await self.store.get(page_key(page.id))
            for page in merged.pages.values()
            if page.dirty
        }

        for entity in merged.iter_entities():
            theirs = remote.get(entity.kind, entity.id)
            keep_local = entity.dirty
            if keep_local and entity.kind is EntityKind.PAGE and contents[entity.id] is None:
                logger.warning(f"No local content for page {entity.id}; keeping remote")
                self._log("push", entity.id, "failed", entity_kind="page",
                          error="local content missing")
                keep_local = False

            if keep_local:
                base = max(entity.version, theirs.version) if theirs else entity.version
                entity.version = base + 1
                entity.dirty = False
                entity.last_modifier = self.client_id
                entity.is_placeholder = False
                if entity.kind is EntityKind.PAGE:
                    to_upload[entity.id] = contents[entity.id]
            elif theirs is not None and (theirs.version > entity.version or entity.dirty):
                merged.put(theirs.model_copy(update={"dirty": False}, deep=True))
                if entity.kind is EntityKind.PAGE:
                    to_download.append(entity.id)

        for theirs in remote.iter_entities():
            if merged.find(theirs.id) is None and theirs.id not in dead:
                merged.put(theirs.model_copy(update={"dirty": False}, deep=True))
                if theirs.kind is EntityKind.PAGE:
                    to_download.append(theirs.id)

        merged.merge_tombstones(remote.deleted_item_ids)
        merged.strip_tombstoned()
        if remote.active_state_updated_at > merged.active_state_updated_at:
            merged.apply_active_state(remote.active_state)

        await asyncio.gather(*(self._download(page_id) for page_id in to_download))
        await asyncio.gather(
            *(
                self._upload(page_id, content)
                for page_id, content in to_upload.items()
                if page_id in merged.pages
            )
        )

        file_id = await self.workspace.assert_unchanged(remote)
        await self.workspace.write_manifest(merged, file_id)

        for page_id in to_upload:
            if page_id in merged.pages:
                self.tree.record_self_push(page_id, merged.pages[page_id].version)
        self.tree.commit(merged, snapshot)

    async def _keep_remote(self, conflicts: ConflictSet) -> None:
        snapshot = self.tree.snapshot()
        merged = snapshot.manifest.copy_deep()
        remote = await self._fetch_remote()

        downloads = []
        for item in conflicts.items:
            theirs = remote.get(item.kind, item.id)
            if theirs is None:
                merged.remove(item.id)
                continue
            merged.put(theirs.model_copy(update={"dirty": False}, deep=True))
            if item.kind is EntityKind.PAGE:
                downloads.append(item.id)

        await asyncio.gather(*(self._download(page_id) for page_id in downloads))

        merged.merge_tombstones(remote.deleted_item_ids)
        merged.strip_tombstoned()
        self.tree.commit(merged, snapshot)

    async def _download(self, page_id: str) -> None:
        content = await self.workspace.download_page(page_id)
        if content is None:
            logger.warning(f"Remote content for page {page_id} is missing")
            return
        await self.store.put(page_key(page_id), content)
        self._log("pull", page_id, "success", entity_kind="page",
                  metadata={"size": len(content)})

    async def _upload(self, page_id: str, content: bytes) -> None:
        await self.workspace.upload_page(page_id, content)
        self._log("push", page_id, "success", entity_kind="page",
                  metadata={"size": len(content)})
