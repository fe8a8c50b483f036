"""
Durable persistence for the metadata tree.

``TreePersistence`` loads the manifest from the local blob store (seeding
first-run placeholder content) and saves it back with a two-method contract:
``schedule_flush()`` coalesces bursts of edits into one write after a short
delay, and ``flush_now()`` writes immediately and can be awaited.
"""

import asyncio
import json
import logging
import uuid
from typing import Any

from pydantic import ValidationError

from ..storage.exceptions import StorageError
from ..storage.local import METADATA_KEY, BlobStore, page_key
from .models import (
    ORDER_GAP,
    ActiveState,
    ExportBundle,
    Manifest,
    Notebook,
    Page,
    now_ms,
)
from .tree import EMPTY_PAGE_CONTENT, MetadataTree

logger = logging.getLogger(__name__)

PLACEHOLDER_NOTEBOOK_NAME = "Untitled notebook"
PLACEHOLDER_PAGE_NAME = "Untitled page"


def migrate_manifest(data: dict[str, Any], client_id: str) -> dict[str, Any]:
    """Fill in fields that older manifest documents lack.

    - missing ``version`` becomes 1
    - missing notebook ``order`` becomes ``(index+1) * ORDER_GAP``
    - missing ``lastModifier`` becomes ``client_id``

    ``baseVersion`` documents are handled by the entity models.
    """
    notebooks = data.get("notebooks") or []
    for idx, notebook in enumerate(notebooks):
        if notebook.get("order") is None:
            notebook["order"] = (idx + 1) * ORDER_GAP

    entities = [
        *notebooks,
        *(data.get("folders") or {}).values(),
        *(data.get("pages") or {}).values(),
    ]
    for entity in entities:
        entity["version"] = entity.get("version") or 1
        entity["lastModifier"] = entity.get("lastModifier") or client_id

    data["notebooks"] = notebooks
    data["deletedItemIds"] = data.get("deletedItemIds") or []
    return data


class TreePersistence:
    """Loads the tree and keeps the local blob store up to date with it."""

    def __init__(
        self,
        store: BlobStore,
        client_id: str,
        *,
        debounce_seconds: float = 1.0,
    ):
        self.store = store
        self.client_id = client_id
        self.debounce_seconds = debounce_seconds
        self.tree: MetadataTree | None = None
        self._pending = False
        self._timer: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    @property
    def has_pending_changes(self) -> bool:
        return self._pending

    async def load(self) -> MetadataTree:
        """
        Load the tree from the local store.

        On first run (no ``metadata`` document) one placeholder notebook with
        one placeholder page is seeded and saved immediately.

        Returns:
            The loaded tree, wired to schedule saves on every mutation

        Raises:
            StorageError: If the stored document cannot be read or parsed
        """
        raw = await self.store.get(METADATA_KEY)
        tree = MetadataTree(self.client_id, on_change=self.schedule_flush)
        self.tree = tree

        if raw is None:
            logger.info("No local metadata found; seeding first-run content")
            self._seed(tree)
            self._pending = True
            await self.flush_now()
            return tree

        try:
            data = migrate_manifest(json.loads(raw), self.client_id)
            manifest = Manifest.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to parse local metadata: {e}")
            raise StorageError(f"Local metadata is unreadable: {e}") from e

        tree.load_manifest(manifest)
        logger.info(
            f"Loaded {len(manifest.notebooks)} notebooks, {len(manifest.folders)} "
            f"folders, {len(manifest.pages)} pages"
        )
        return tree

    def _seed(self, tree: MetadataTree) -> None:
        now = now_ms()
        notebook_id = str(uuid.uuid4())
        page_id = str(uuid.uuid4())

        manifest = Manifest(
            notebooks=[
                Notebook(
                    id=notebook_id,
                    name=PLACEHOLDER_NOTEBOOK_NAME,
                    color="blue",
                    created_at=now,
                    order=ORDER_GAP,
                    last_modifier=self.client_id,
                    is_placeholder=True,
                )
            ],
            pages={
                page_id: Page(
                    id=page_id,
                    name=PLACEHOLDER_PAGE_NAME,
                    notebook_id=notebook_id,
                    parent_id=notebook_id,
                    created_at=now,
                    updated_at=now,
                    order=ORDER_GAP,
                    last_modifier=self.client_id,
                    is_placeholder=True,
                )
            },
        )
        manifest.apply_active_state(
            ActiveState(notebook_id=notebook_id, updated_at=now, modifier=self.client_id)
        )
        tree.load_manifest(manifest)
        tree.requeue_content({page_id: EMPTY_PAGE_CONTENT})

    def schedule_flush(self) -> None:
        """Arrange for a save after the debounce window.

        Safe to call from synchronous code. Without a running event loop the
        change stays pending until the next ``flush_now()``.
        """
        self._pending = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = loop.create_task(self._debounced_flush())

    async def _debounced_flush(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        self._timer = None
        try:
            await self._flush()
        except StorageError as e:
            logger.error(f"Durable save failed, will retry: {e}")
            self.schedule_flush()

    async def flush_now(self) -> None:
        """
        Cancel any pending timer and write pending changes immediately.

        Raises:
            StorageError: If the write fails (the changes stay pending)
        """
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        await self._flush()

    async def _flush(self) -> None:
        if self.tree is None:
            return

        async with self._lock:
            if not self._pending:
                return
            self._pending = False
            content = self.tree.take_pending_content()
            copies = self.tree.take_pending_copies()
            try:
                for page_id, source_id in copies.items():
                    data = await self.store.get(page_key(source_id))
                    if data is None:
                        data = EMPTY_PAGE_CONTENT
                    await self.store.put(page_key(page_id), data)
                for page_id, data in content.items():
                    await self.store.put(page_key(page_id), data)
                await self.store.put(METADATA_KEY, self.tree.manifest.to_json())
            except StorageError:
                self.tree.requeue_content(content)
                self.tree.requeue_copies(copies)
                self._pending = True
                raise

        logger.debug(
            f"Saved metadata, {len(content)} page contents and {len(copies)} copies"
        )

    async def export_subtree(self, entity_id: str) -> ExportBundle:
        """
        Bundle an entity, everything below it and the saved page contents.

        Pending edits are flushed first so the bundle matches the tree.

        Raises:
            EntityNotFoundError: If ``entity_id`` is unknown
            StorageError: If the tree is not loaded or the store fails
        """
        if self.tree is None:
            raise StorageError("Tree is not loaded")
        await self.flush_now()

        fragment = self.tree.extract(entity_id)
        contents = {}
        for page_id in fragment.pages:
            data = await self.store.get(page_key(page_id))
            contents[page_id] = EMPTY_PAGE_CONTENT if data is None else data
        logger.info(f"Exported {len(fragment.entity_ids())} entities below {entity_id}")
        return ExportBundle(root_id=entity_id, manifest=fragment, contents=contents)

    async def close(self) -> None:
        """Flush outstanding changes; used on shutdown."""
        await self.flush_now()
