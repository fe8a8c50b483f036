"""
Entity and manifest models.

The manifest is the single document describing the whole tree. The same wire
format is used for the local ``metadata`` blob and the remote manifest file;
the remote copy never carries ``dirty`` flags.

Wire format (camelCase keys)::

    {
      "notebooks": [Entity],
      "folders": {id: Entity},
      "pages": {id: Entity},
      "deletedItemIds": [id],
      "activeNotebookId": id | null,
      "activePath": [id],
      "activePageId": id | null,
      "activeStateUpdatedAt": epoch_ms,
      "activeStateModifier": client_id,
      "clientId": client_id
    }
"""

import gzip
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Iterable, Iterator, TypeVar, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

# Gap between consecutive siblings; leaves room for midpoint insertions
ORDER_GAP = 10000.0


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class EntityKind(str, Enum):
    """Kinds of tree entities."""

    NOTEBOOK = "notebook"
    FOLDER = "folder"
    PAGE = "page"


class Entity(BaseModel):
    """Fields shared by every tree entity."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    kind: ClassVar[EntityKind]

    id: str
    name: str = ""
    name_strokes: str | None = None
    color: str | None = None
    created_at: int = Field(default_factory=now_ms)
    order: float = 0.0
    version: int = 1
    dirty: bool = False
    last_modifier: str = ""
    is_placeholder: bool = False

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_fields(cls, data: Any) -> Any:
        # Older manifests tracked a baseVersion instead of a dirty flag
        if isinstance(data, dict) and "dirty" not in data and "baseVersion" in data:
            data = dict(data)
            data["dirty"] = data.get("version", 1) > data["baseVersion"]
        return data

    def touch(self, client_id: str) -> None:
        """Mark the entity as locally modified by ``client_id``."""
        self.dirty = True
        self.last_modifier = client_id

    def to_wire(self, include_dirty: bool = True) -> dict[str, Any]:
        """Serialize to the camelCase wire representation."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        if not include_dirty:
            data.pop("dirty", None)
        if not self.is_placeholder:
            data.pop("isPlaceholder", None)
        return data


class Notebook(Entity):
    """Root of a tree. Children use the notebook id as their parent id."""

    kind: ClassVar[EntityKind] = EntityKind.NOTEBOOK


class _Child(Entity):
    notebook_id: str
    parent_id: str

    @model_validator(mode="before")
    @classmethod
    def _default_parent(cls, data: Any) -> Any:
        # A null parent means "directly under the notebook"
        if isinstance(data, dict):
            parent = data.get("parentId", data.get("parent_id"))
            if parent is None:
                data = dict(data)
                data["parentId"] = data.get("notebookId", data.get("notebook_id"))
        return data


class Folder(_Child):
    kind: ClassVar[EntityKind] = EntityKind.FOLDER


class Page(_Child):
    """A page. Its content is a separate blob keyed ``page-<id>``."""

    kind: ClassVar[EntityKind] = EntityKind.PAGE

    updated_at: int = Field(default_factory=now_ms)


AnyEntity = Union[Notebook, Folder, Page]
E = TypeVar("E", bound=Entity)


def deduplicate(items: Iterable[E]) -> list[E]:
    """Collapse records sharing an id.

    Keeps the record with the higher version; on a tie the dirty one wins.
    First-seen order is preserved.
    """
    kept: dict[str, E] = {}
    for item in items:
        existing = kept.get(item.id)
        if (
            existing is None
            or item.version > existing.version
            or (item.version == existing.version and item.dirty and not existing.dirty)
        ):
            kept[item.id] = item
    return list(kept.values())


@dataclass
class ActiveState:
    """Which node the user is currently looking at."""

    notebook_id: str | None = None
    path: list[str] = field(default_factory=list)
    page_id: str | None = None
    updated_at: int = 0
    modifier: str = ""


class Manifest(BaseModel):
    """The whole tree, tombstones and active-state pointer as one document."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    notebooks: list[Notebook] = Field(default_factory=list)
    folders: dict[str, Folder] = Field(default_factory=dict)
    pages: dict[str, Page] = Field(default_factory=dict)
    deleted_item_ids: list[str] = Field(default_factory=list)
    active_notebook_id: str | None = None
    active_path: list[str] = Field(default_factory=list)
    active_page_id: str | None = None
    active_state_updated_at: int = 0
    active_state_modifier: str = ""
    client_id: str = ""

    @field_validator("notebooks")
    @classmethod
    def _dedupe_notebooks(cls, value: list[Notebook]) -> list[Notebook]:
        return deduplicate(value)

    @model_validator(mode="after")
    def _key_children_by_id(self) -> "Manifest":
        # A record filed under a foreign key is a partial-write duplicate
        self.folders = {f.id: f for f in deduplicate(self.folders.values())}
        self.pages = {p.id: p for p in deduplicate(self.pages.values())}
        return self

    @field_validator("deleted_item_ids")
    @classmethod
    def _unique_tombstones(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @field_validator("active_path", mode="before")
    @classmethod
    def _null_path(cls, value: Any) -> Any:
        return [] if value is None else value

    # -- serialization ---------------------------------------------------

    @classmethod
    def from_json(cls, data: bytes | str) -> "Manifest":
        return cls.model_validate_json(data)

    def to_wire(self, include_dirty: bool = True) -> dict[str, Any]:
        return {
            "notebooks": [n.to_wire(include_dirty) for n in self.notebooks],
            "folders": {
                fid: f.to_wire(include_dirty) for fid, f in self.folders.items()
            },
            "pages": {pid: p.to_wire(include_dirty) for pid, p in self.pages.items()},
            "deletedItemIds": list(self.deleted_item_ids),
            "activeNotebookId": self.active_notebook_id,
            "activePath": list(self.active_path),
            "activePageId": self.active_page_id,
            "activeStateUpdatedAt": self.active_state_updated_at,
            "activeStateModifier": self.active_state_modifier,
            "clientId": self.client_id,
        }

    def to_json(self, include_dirty: bool = True) -> bytes:
        return json.dumps(self.to_wire(include_dirty)).encode("utf-8")

    def copy_deep(self) -> "Manifest":
        return self.model_copy(deep=True)

    # -- entity access ---------------------------------------------------

    @property
    def is_empty(self) -> bool:
        """True when the manifest holds no notebooks and no pages."""
        return not self.notebooks and not self.pages

    def iter_entities(self) -> Iterator[AnyEntity]:
        yield from self.notebooks
        yield from self.folders.values()
        yield from self.pages.values()

    def entity_ids(self) -> set[str]:
        return {e.id for e in self.iter_entities()}

    def get(self, kind: EntityKind, entity_id: str) -> AnyEntity | None:
        if kind is EntityKind.NOTEBOOK:
            return next((n for n in self.notebooks if n.id == entity_id), None)
        if kind is EntityKind.FOLDER:
            return self.folders.get(entity_id)
        return self.pages.get(entity_id)

    def find(self, entity_id: str) -> AnyEntity | None:
        """Look an id up across all three collections."""
        return (
            self.folders.get(entity_id)
            or self.pages.get(entity_id)
            or self.get(EntityKind.NOTEBOOK, entity_id)
        )

    def put(self, entity: AnyEntity) -> None:
        """Insert or replace an entity by id."""
        if entity.kind is EntityKind.NOTEBOOK:
            for idx, existing in enumerate(self.notebooks):
                if existing.id == entity.id:
                    self.notebooks[idx] = entity
                    return
            self.notebooks.append(entity)
        elif entity.kind is EntityKind.FOLDER:
            self.folders[entity.id] = entity
        else:
            self.pages[entity.id] = entity

    def remove(self, entity_id: str) -> AnyEntity | None:
        """Remove an entity of any kind, returning it if present."""
        removed = self.folders.pop(entity_id, None) or self.pages.pop(entity_id, None)
        if removed is not None:
            return removed
        for idx, notebook in enumerate(self.notebooks):
            if notebook.id == entity_id:
                return self.notebooks.pop(idx)
        return None

    def versions(self) -> dict[str, int]:
        """Map every entity id to its version."""
        return {e.id: e.version for e in self.iter_entities()}

    # -- tombstones ------------------------------------------------------

    def merge_tombstones(self, ids: Iterable[str]) -> None:
        """Union ``ids`` into the tombstone list (never removes any)."""
        self.deleted_item_ids = list(dict.fromkeys([*self.deleted_item_ids, *ids]))

    def strip_tombstoned(self) -> list[str]:
        """Drop every entity whose id is tombstoned; return the dropped ids."""
        dead = set(self.deleted_item_ids)
        dropped = [e.id for e in self.iter_entities() if e.id in dead]
        for entity_id in dropped:
            self.remove(entity_id)
        return dropped

    # -- active state ----------------------------------------------------

    @property
    def active_state(self) -> ActiveState:
        return ActiveState(
            notebook_id=self.active_notebook_id,
            path=list(self.active_path),
            page_id=self.active_page_id,
            updated_at=self.active_state_updated_at,
            modifier=self.active_state_modifier,
        )

    def apply_active_state(self, state: ActiveState) -> None:
        self.active_notebook_id = state.notebook_id
        self.active_path = list(state.path)
        self.active_page_id = state.page_id
        self.active_state_updated_at = state.updated_at
        self.active_state_modifier = state.modifier


class ExportBundle(BaseModel):
    """A subtree and its page contents, detached from any tree.

    ``manifest`` holds the subtree root and everything below it in the usual
    wire format. Ids are replaced when the bundle is imported, so the same
    bundle can be imported any number of times. Stored gzip-compressed, with
    page contents base64-encoded.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )

    root_id: str
    exported_at: int = Field(default_factory=now_ms)
    manifest: Manifest
    contents: dict[str, bytes] = Field(default_factory=dict)

    @field_serializer("manifest")
    def _remote_wire(self, manifest: Manifest) -> dict[str, Any]:
        return manifest.to_wire(include_dirty=False)

    @property
    def root(self) -> AnyEntity | None:
        return self.manifest.find(self.root_id)

    def to_bytes(self) -> bytes:
        return gzip.compress(self.model_dump_json(by_alias=True).encode("utf-8"))

    @classmethod
    def from_bytes(cls, data: bytes) -> "ExportBundle":
        return cls.model_validate_json(gzip.decompress(data))
