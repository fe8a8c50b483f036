"""
In-memory metadata tree.

Every mutation is synchronous, marks the touched entities dirty with this
device as ``last_modifier`` and calls the ``on_change`` hook (normally
``TreePersistence.schedule_flush``) so a debounced durable save follows.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Callable

from .models import (
    ORDER_GAP,
    ActiveState,
    AnyEntity,
    EntityKind,
    ExportBundle,
    Folder,
    Manifest,
    Notebook,
    Page,
    now_ms,
)
from .traversal import TreeIndex

logger = logging.getLogger(__name__)

EMPTY_PAGE_CONTENT = b"{}"


class TreeError(Exception):
    """Base exception for tree mutations."""


class EntityNotFoundError(TreeError):
    """No entity with the given id exists in the tree."""


class InvalidParentError(TreeError):
    """The requested parent cannot hold the entity."""


class CyclicMoveError(TreeError):
    """Moving the entity would make it its own ancestor."""


@dataclass
class TreeSnapshot:
    """A deep copy of the manifest plus the mutation counters at copy time.

    The counters let ``MetadataTree.commit`` tell which entities were edited
    while a sync pass was working on the copy.
    """

    manifest: Manifest
    revisions: dict[str, int]


class MetadataTree:
    """Registry of notebooks, folders and pages for one device."""

    def __init__(
        self,
        client_id: str,
        manifest: Manifest | None = None,
        *,
        on_change: Callable[[], None] | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.client_id = client_id
        self.on_change = on_change
        self._clock = clock
        self._manifest = manifest or Manifest()
        self._manifest.client_id = client_id
        self._revisions: dict[str, int] = {}
        self._pending_content: dict[str, bytes] = {}
        # Duplicated page id -> page whose stored content it should receive
        self._pending_copies: dict[str, str] = {}
        self._self_pushes: dict[str, int] = {}

    # -- queries ---------------------------------------------------------

    @property
    def manifest(self) -> Manifest:
        """The live manifest. Callers must not mutate it directly."""
        return self._manifest

    @property
    def notebooks(self) -> list[Notebook]:
        return sorted(self._manifest.notebooks, key=lambda n: n.order)

    @property
    def tombstones(self) -> list[str]:
        return list(self._manifest.deleted_item_ids)

    @property
    def active_state(self) -> ActiveState:
        return self._manifest.active_state

    def get(self, entity_id: str) -> AnyEntity:
        entity = self._manifest.find(entity_id)
        if entity is None:
            raise EntityNotFoundError(f"No entity with id {entity_id}")
        return entity

    def children(self, parent_id: str) -> list[AnyEntity]:
        return TreeIndex(self._manifest).children(parent_id)

    def dirty_entities(self) -> list[AnyEntity]:
        return [e for e in self._manifest.iter_entities() if e.dirty]

    def snapshot(self) -> TreeSnapshot:
        return TreeSnapshot(
            manifest=self._manifest.copy_deep(), revisions=dict(self._revisions)
        )

    # -- internal helpers ------------------------------------------------

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def _mark(self, entity: AnyEntity) -> None:
        entity.touch(self.client_id)
        self._revisions[entity.id] = self._revisions.get(entity.id, 0) + 1

    def _next_order(self, siblings: list[AnyEntity]) -> float:
        return max((s.order for s in siblings), default=0.0) + ORDER_GAP

    def _resolve_parent(self, parent_id: str) -> tuple[str, str]:
        """Return ``(parent_id, notebook_id)`` for a container id."""
        folder = self._manifest.folders.get(parent_id)
        if folder is not None:
            return folder.id, folder.notebook_id
        notebook = self._manifest.get(EntityKind.NOTEBOOK, parent_id)
        if notebook is not None:
            return notebook.id, notebook.id
        raise InvalidParentError(f"{parent_id} is not a notebook or folder")

    def _stamp_active(self, state: ActiveState) -> None:
        state.updated_at = self._clock()
        state.modifier = self.client_id
        self._manifest.apply_active_state(state)

    # -- creation --------------------------------------------------------

    def create_notebook(
        self, name: str, *, color: str | None = None, name_strokes: str | None = None
    ) -> Notebook:
        """Create a notebook after the last one and make it active."""
        notebook = Notebook(
            id=str(uuid.uuid4()),
            name=name,
            color=color,
            name_strokes=name_strokes,
            order=self._next_order(self._manifest.notebooks),
            created_at=self._clock(),
        )
        self._mark(notebook)
        self._manifest.put(notebook)
        logger.debug(f"Created notebook {name!r} ({notebook.id})")

        self._stamp_active(ActiveState(notebook_id=notebook.id))
        self._changed()
        return notebook

    def create_folder(
        self, name: str, parent_id: str, *, color: str | None = None
    ) -> Folder:
        """Create a folder as the last child of ``parent_id`` and open it.

        Raises:
            InvalidParentError: If ``parent_id`` is not a notebook or folder
        """
        parent_id, notebook_id = self._resolve_parent(parent_id)
        folder = Folder(
            id=str(uuid.uuid4()),
            name=name,
            color=color,
            notebook_id=notebook_id,
            parent_id=parent_id,
            order=self._next_order(self.children(parent_id)),
            created_at=self._clock(),
        )
        self._mark(folder)
        self._manifest.put(folder)
        logger.debug(f"Created folder {name!r} ({folder.id})")

        path = TreeIndex(self._manifest).folder_path(folder.id) + [folder.id]
        self._stamp_active(ActiveState(notebook_id=notebook_id, path=path))
        self._changed()
        return folder

    def create_page(self, name: str, parent_id: str) -> Page:
        """Create a page with empty content as the last child of ``parent_id``.

        The new page becomes the active page.

        Raises:
            InvalidParentError: If ``parent_id`` is not a notebook or folder
        """
        parent_id, notebook_id = self._resolve_parent(parent_id)
        now = self._clock()
        page = Page(
            id=str(uuid.uuid4()),
            name=name,
            notebook_id=notebook_id,
            parent_id=parent_id,
            order=self._next_order(self.children(parent_id)),
            created_at=now,
            updated_at=now,
        )
        self._mark(page)
        self._manifest.put(page)
        self._pending_content[page.id] = EMPTY_PAGE_CONTENT
        logger.debug(f"Created page {name!r} ({page.id})")

        self.select_page(page.id)
        return page

    # -- mutation --------------------------------------------------------

    def rename(
        self,
        entity_id: str,
        name: str,
        *,
        name_strokes: str | None = None,
        color: str | None = None,
    ) -> AnyEntity:
        """Rename an entity. ``color`` is left unchanged when None."""
        entity = self.get(entity_id)
        entity.name = name
        entity.name_strokes = name_strokes
        if color is not None:
            entity.color = color
        self._mark(entity)
        logger.debug(f"Renamed {entity.kind.value} {entity_id} to {name!r}")
        self._changed()
        return entity

    def move(self, entity_id: str, target_id: str, as_append: bool = False) -> AnyEntity:
        """
        Move a folder or page.

        Args:
            entity_id: Folder or page to move
            target_id: With ``as_append`` the new parent container; otherwise
                the sibling to insert before
            as_append: Append as the last child of ``target_id``

        Returns:
            The moved entity

        Raises:
            CyclicMoveError: If the target is the entity or one of its
                descendants
            InvalidParentError: If the entity is a notebook or the target
                cannot receive it
            EntityNotFoundError: If either id is unknown
        """
        entity = self.get(entity_id)
        if entity.kind is EntityKind.NOTEBOOK:
            raise InvalidParentError("Notebooks cannot be moved; use reorder")

        index = TreeIndex(self._manifest)
        if target_id == entity_id or index.is_descendant(target_id, entity_id):
            logger.warning(f"Blocked cyclic move of {entity_id} into {target_id}")
            raise CyclicMoveError(
                f"Cannot move {entity_id} into itself or its descendant {target_id}"
            )

        if as_append:
            parent_id, notebook_id = self._resolve_parent(target_id)
            siblings = [s for s in index.children(parent_id) if s.id != entity_id]
            order = self._next_order(siblings)
        else:
            target = self.get(target_id)
            if target.kind is EntityKind.NOTEBOOK:
                raise InvalidParentError("Cannot insert next to a notebook")
            parent_id, notebook_id = target.parent_id, target.notebook_id
            siblings = [s for s in index.children(parent_id) if s.id != entity_id]
            position = next(i for i, s in enumerate(siblings) if s.id == target_id)
            if position == 0:
                order = target.order / 2
            else:
                order = (siblings[position - 1].order + target.order) / 2

        old_notebook_id = entity.notebook_id
        entity.parent_id = parent_id
        entity.notebook_id = notebook_id
        entity.order = order
        self._mark(entity)

        if notebook_id != old_notebook_id:
            for descendant_id in index.descendants(entity_id):
                descendant = self._manifest.find(descendant_id)
                if descendant is not None:
                    descendant.notebook_id = notebook_id
                    self._mark(descendant)

        logger.debug(f"Moved {entity.kind.value} {entity_id} under {parent_id}")
        self._changed()
        return entity

    def reorder(self, active_id: str, over_id: str) -> None:
        """Drop ``active_id`` onto ``over_id``.

        Two notebooks are renumbered ``(index+1) * ORDER_GAP`` in their new
        sequence (only notebooks whose order changed become dirty); anything
        else is inserted before ``over_id``.
        """
        notebooks = self.notebooks
        ids = [n.id for n in notebooks]
        if active_id in ids and over_id in ids:
            if active_id == over_id:
                return
            moved = notebooks.pop(ids.index(active_id))
            notebooks.insert(ids.index(over_id), moved)
            for idx, notebook in enumerate(notebooks):
                new_order = (idx + 1) * ORDER_GAP
                if notebook.order != new_order:
                    notebook.order = new_order
                    self._mark(notebook)
            logger.debug(f"Reordered notebook {active_id}")
            self._changed()
            return

        self.move(active_id, over_id, as_append=False)

    def delete(self, entity_id: str) -> list[str]:
        """
        Delete an entity and, for containers, everything below it.

        Args:
            entity_id: Entity to delete

        Returns:
            All deleted ids (the entity first), now tombstoned
        """
        self.get(entity_id)
        deleted = [entity_id, *TreeIndex(self._manifest).descendants(entity_id)]

        for deleted_id in deleted:
            self._manifest.remove(deleted_id)
            self._pending_content.pop(deleted_id, None)
            self._pending_copies.pop(deleted_id, None)
            self._revisions.pop(deleted_id, None)
        self._manifest.merge_tombstones(deleted)

        state = self._manifest.active_state
        if state.notebook_id == entity_id:
            state = ActiveState(updated_at=state.updated_at, modifier=state.modifier)
        elif entity_id in state.path:
            state.path = state.path[: state.path.index(entity_id)]
        if state.page_id in deleted:
            state.page_id = None
        # Fix-ups keep the previous timestamp so they never win a merge
        self._manifest.apply_active_state(state)

        logger.info(
            f"Deleted {entity_id} and {len(deleted) - 1} descendants; "
            f"{len(self._manifest.deleted_item_ids)} tombstones"
        )
        self._changed()
        return deleted

    def update_page_content(self, page_id: str, content: bytes) -> None:
        """Queue new content for a page and mark the page dirty."""
        page = self._manifest.pages.get(page_id)
        if page is None:
            raise EntityNotFoundError(f"No page with id {page_id}")
        page.updated_at = self._clock()
        self._mark(page)
        self._pending_content[page_id] = bytes(content)
        self._pending_copies.pop(page_id, None)
        self._changed()

    def take_pending_content(self) -> dict[str, bytes]:
        """Return and forget page contents waiting to be written."""
        pending, self._pending_content = self._pending_content, {}
        return pending

    def requeue_content(self, pending: dict[str, bytes]) -> None:
        """Put back content that failed to save; newer edits are kept."""
        for page_id, content in pending.items():
            if page_id in self._manifest.pages:
                self._pending_content.setdefault(page_id, content)

    def take_pending_copies(self) -> dict[str, str]:
        """Return and forget ``{new page id: source page id}`` content copies."""
        copies, self._pending_copies = self._pending_copies, {}
        return copies

    def requeue_copies(self, copies: dict[str, str]) -> None:
        for page_id, source_id in copies.items():
            if page_id in self._manifest.pages and page_id not in self._pending_content:
                self._pending_copies.setdefault(page_id, source_id)

    def _queue_copy(self, source_id: str, page_id: str) -> None:
        if source_id in self._pending_content:
            self._pending_content[page_id] = self._pending_content[source_id]
        else:
            # A copy of an unsaved copy reads from the original
            self._pending_copies[page_id] = self._pending_copies.get(source_id, source_id)

    # -- copies ----------------------------------------------------------

    def _put_copy(
        self,
        entity: AnyEntity,
        new_id: str,
        parent_id: str | None,
        notebook_id: str,
        order: float,
        now: int,
    ) -> None:
        update = {
            "id": new_id,
            "order": order,
            "created_at": now,
            "version": 1,
            "is_placeholder": False,
        }
        if entity.kind is not EntityKind.NOTEBOOK:
            update.update(parent_id=parent_id, notebook_id=notebook_id)
        if entity.kind is EntityKind.PAGE:
            update["updated_at"] = now
        copy = entity.model_copy(update=update, deep=True)
        self._mark(copy)
        self._manifest.put(copy)

    def _graft(
        self, root: AnyEntity, below: list[AnyEntity], parent_id: str | None
    ) -> dict[str, str]:
        """
        Insert copies of ``root`` and ``below`` under fresh ids.

        Copies start at version 1, dirty and owned by this device. The root
        goes after the last child of its new parent (or the last notebook);
        entities in ``below`` keep their order and must come parents first.
        An entity whose parent is not part of the copy is skipped.

        Args:
            root: Subtree root
            below: Entities under ``root``, parents before children
            parent_id: Container receiving a folder or page root; ignored for
                notebooks

        Returns:
            Map from original ids to new ids

        Raises:
            InvalidParentError: If ``parent_id`` cannot hold the root
        """
        now = self._clock()
        if root.kind is EntityKind.NOTEBOOK:
            new_root_id = notebook_id = str(uuid.uuid4())
            parent_id = None
            order = self._next_order(self._manifest.notebooks)
        else:
            if parent_id is None:
                raise InvalidParentError(f"A {root.kind.value} needs a parent container")
            parent_id, notebook_id = self._resolve_parent(parent_id)
            new_root_id = str(uuid.uuid4())
            order = self._next_order(self.children(parent_id))

        id_map = {root.id: new_root_id}
        self._put_copy(root, new_root_id, parent_id, notebook_id, order, now)
        for entity in below:
            new_parent_id = id_map.get(entity.parent_id)
            if new_parent_id is None:
                logger.warning(f"Skipping {entity.id}: parent {entity.parent_id} not copied")
                continue
            id_map[entity.id] = str(uuid.uuid4())
            self._put_copy(
                entity, id_map[entity.id], new_parent_id, notebook_id, entity.order, now
            )
        return id_map

    def duplicate(self, entity_id: str) -> AnyEntity:
        """
        Copy an entity and everything below it next to the original.

        Page contents are copied on the next durable save.

        Args:
            entity_id: Notebook, folder or page to copy

        Returns:
            The copy of ``entity_id``
        """
        entity = self.get(entity_id)
        index = TreeIndex(self._manifest)
        below = [index.get(did) for did in index.descendants(entity_id)]
        parent_id = None if entity.kind is EntityKind.NOTEBOOK else entity.parent_id

        id_map = self._graft(entity, below, parent_id)
        for old_id, new_id in id_map.items():
            if new_id in self._manifest.pages:
                self._queue_copy(old_id, new_id)

        logger.info(f"Duplicated {entity.kind.value} {entity_id} ({len(id_map)} entities)")
        self._changed()
        return self.get(id_map[entity_id])

    def extract(self, entity_id: str) -> Manifest:
        """Copy an entity and its descendants into a standalone manifest."""
        root = self.get(entity_id)
        index = TreeIndex(self._manifest)
        fragment = Manifest(client_id=self.client_id)
        for member in [root, *(index.get(did) for did in index.descendants(entity_id))]:
            fragment.put(member.model_copy(deep=True))
        return fragment

    def import_bundle(self, bundle: ExportBundle, parent_id: str | None = None) -> AnyEntity:
        """
        Add an exported subtree to this tree under fresh ids.

        Args:
            bundle: The export to add
            parent_id: Container for an exported folder or page; notebooks
                are always added after the last notebook

        Returns:
            The new subtree root

        Raises:
            TreeError: If the bundle does not hold its root
            InvalidParentError: If ``parent_id`` is missing or cannot hold
                the root
        """
        root = bundle.root
        if root is None:
            raise TreeError(f"Export does not contain its root {bundle.root_id}")
        index = TreeIndex(bundle.manifest)
        below = [index.get(did) for did in index.descendants(root.id)]

        id_map = self._graft(root, below, parent_id)
        for old_id, new_id in id_map.items():
            if new_id in self._manifest.pages:
                self._pending_content[new_id] = bundle.contents.get(
                    old_id, EMPTY_PAGE_CONTENT
                )

        logger.info(f"Imported {root.kind.value} {root.name!r} ({len(id_map)} entities)")
        self._changed()
        return self.get(id_map[root.id])

    # -- active state ----------------------------------------------------

    def set_active_notebook(self, notebook_id: str) -> None:
        if self._manifest.get(EntityKind.NOTEBOOK, notebook_id) is None:
            raise EntityNotFoundError(f"No notebook with id {notebook_id}")
        self._stamp_active(ActiveState(notebook_id=notebook_id))
        self._changed()

    def navigate_path(self, path: list[str]) -> None:
        """Show the folder at the end of ``path``, deselecting the page."""
        state = self._manifest.active_state
        state.path = list(path)
        state.page_id = None
        self._stamp_active(state)
        self._changed()

    def select_page(self, page_id: str) -> None:
        """Select a page, opening every folder between it and its notebook."""
        page = self._manifest.pages.get(page_id)
        if page is None:
            raise EntityNotFoundError(f"No page with id {page_id}")
        path = TreeIndex(self._manifest).folder_path(page_id)
        self._stamp_active(
            ActiveState(notebook_id=page.notebook_id, path=path, page_id=page_id)
        )
        self._changed()

    def _validate_active_state(self) -> None:
        state = self._manifest.active_state
        if state.notebook_id is None:
            return
        if self._manifest.get(EntityKind.NOTEBOOK, state.notebook_id) is None:
            logger.info(f"Active notebook {state.notebook_id} is gone; resetting")
            self._manifest.apply_active_state(
                ActiveState(updated_at=state.updated_at, modifier=state.modifier)
            )
            return

        for idx, folder_id in enumerate(state.path):
            if folder_id not in self._manifest.folders:
                state.path = state.path[:idx]
                break
        if state.page_id is not None and state.page_id not in self._manifest.pages:
            logger.info(f"Active page {state.page_id} is gone; deselecting")
            state.page_id = None
        self._manifest.apply_active_state(state)

    # -- sync integration ------------------------------------------------

    def load_manifest(self, manifest: Manifest) -> None:
        """Replace the tree with a freshly loaded manifest."""
        manifest.client_id = self.client_id
        self._manifest = manifest
        self._revisions.clear()
        self._validate_active_state()

    def commit(self, merged: Manifest, snapshot: TreeSnapshot) -> None:
        """
        Adopt the result of a merge computed from ``snapshot``.

        Entities edited after the snapshot was taken keep their local fields
        and stay dirty; if the merge pushed them they take the pushed version
        so the next pass pushes again instead of reporting a conflict.
        Tombstones are unioned and the active pointer is last-writer-wins.

        Args:
            merged: Merged manifest
            snapshot: The snapshot the merge was computed from
        """
        local = self._manifest
        snapshot_ids = snapshot.manifest.entity_ids()
        tombstones = list(dict.fromkeys([*local.deleted_item_ids, *merged.deleted_item_ids]))
        dead = set(tombstones)

        def edited(entity_id: str) -> bool:
            return self._revisions.get(entity_id, 0) != snapshot.revisions.get(entity_id, 0)

        result = Manifest(client_id=self.client_id, deleted_item_ids=tombstones)
        for entity in merged.iter_entities():
            if entity.id in dead:
                continue
            current = local.find(entity.id)
            if current is None:
                if entity.id in snapshot_ids:
                    # Removed locally after the snapshot without a tombstone
                    continue
                result.put(entity.model_copy(deep=True))
            elif edited(entity.id):
                if entity.version > current.version and entity.last_modifier == self.client_id:
                    current.version = entity.version
                result.put(current)
            else:
                result.put(entity.model_copy(deep=True))

        for entity in local.iter_entities():
            if entity.id in dead or result.find(entity.id) is not None:
                continue
            if entity.id not in snapshot_ids or edited(entity.id):
                result.put(entity)

        local_state, merged_state = local.active_state, merged.active_state
        result.apply_active_state(
            merged_state if merged_state.updated_at > local_state.updated_at else local_state
        )

        self._manifest = result
        self._validate_active_state()
        logger.info(
            f"Committed merge: {len(result.notebooks)} notebooks, "
            f"{len(result.folders)} folders, {len(result.pages)} pages"
        )
        self._changed()

    def record_self_push(self, page_id: str, version: int) -> None:
        self._self_pushes[page_id] = version

    def is_self_authored(self, page_id: str, version: int) -> bool:
        """True if this device pushed ``version`` of the page itself."""
        return self._self_pushes.get(page_id) == version
