"""Notebook/folder/page metadata tree."""

from .models import (
    ORDER_GAP,
    ActiveState,
    AnyEntity,
    Entity,
    EntityKind,
    ExportBundle,
    Folder,
    Manifest,
    Notebook,
    Page,
    deduplicate,
)
from .persistence import TreePersistence
from .traversal import TreeIndex
from .tree import (
    CyclicMoveError,
    EntityNotFoundError,
    InvalidParentError,
    MetadataTree,
    TreeError,
    TreeSnapshot,
)

__all__ = [
    "ORDER_GAP",
    "ActiveState",
    "AnyEntity",
    "Entity",
    "EntityKind",
    "ExportBundle",
    "Folder",
    "Manifest",
    "Notebook",
    "Page",
    "deduplicate",
    "TreePersistence",
    "TreeIndex",
    "CyclicMoveError",
    "EntityNotFoundError",
    "InvalidParentError",
    "MetadataTree",
    "TreeError",
    "TreeSnapshot",
]
