"""
Change classification.

Compares the local snapshot with the fetched remote manifest and sorts every
entity into safe pulls, safe pushes and conflicts. A conflict means two
*different* devices produced diverging versions; a remote version authored by
this device is never a conflict.
"""

import logging
from dataclasses import dataclass, field

from ..tree.models import AnyEntity, EntityKind, Manifest
from ..tree.traversal import TreeIndex

logger = logging.getLogger(__name__)


@dataclass
class SyncItem:
    """One entity scheduled for a sync action."""

    kind: EntityKind
    id: str
    local_version: int | None = None
    remote_version: int | None = None
    reason: str = ""


@dataclass
class SyncPlan:
    """Result of classifying a local snapshot against a remote manifest."""

    safe_pulls: list[SyncItem] = field(default_factory=list)
    safe_pushes: list[SyncItem] = field(default_factory=list)
    conflicts: list[SyncItem] = field(default_factory=list)
    # Untouched placeholders to drop locally without tombstoning
    local_deletions: list[SyncItem] = field(default_factory=list)

    @property
    def total_operations(self) -> int:
        return len(self.safe_pulls) + len(self.safe_pushes) + len(self.local_deletions)

    @property
    def has_conflicts(self) -> bool:
        return len(self.conflicts) > 0

    @property
    def conflict_ids(self) -> set[str]:
        return {item.id for item in self.conflicts}

    @property
    def push_ids(self) -> set[str]:
        return {item.id for item in self.safe_pushes}

    @property
    def pull_ids(self) -> set[str]:
        return {item.id for item in self.safe_pulls}


def classify(local: Manifest, remote: Manifest, client_id: str) -> SyncPlan:
    """
    Classify every entity of ``local`` and ``remote``.

    Args:
        local: Local snapshot, including dirty flags and tombstones
        remote: Remote manifest as fetched
        client_id: This device's id

    Returns:
        A plan whose pull, push and conflict lists are disjoint
    """
    plan = SyncPlan()
    index = TreeIndex(local)
    remote_has_data = not remote.is_empty
    remote_tombstones = set(remote.deleted_item_ids)

    for entity in local.iter_entities():
        if entity.id in remote_tombstones:
            # Phase C strips it; nothing to transfer
            continue

        dirty = entity.dirty
        reason = ""
        if entity.is_placeholder and not dirty:
            if entity.kind is not EntityKind.PAGE and index.has_user_content(entity.id):
                # Children need their parent to exist remotely
                dirty = True
                reason = "placeholder promotion"
            elif remote_has_data:
                logger.info(
                    f"Discarding untouched placeholder {entity.kind.value} {entity.id}"
                )
                plan.local_deletions.append(
                    SyncItem(entity.kind, entity.id, entity.version, None, "placeholder")
                )
                continue

        _classify_entity(plan, entity, remote.get(entity.kind, entity.id), dirty, reason, client_id)

    local_tombstones = set(local.deleted_item_ids)
    for entity in remote.iter_entities():
        if local.find(entity.id) is not None or entity.id in local_tombstones:
            continue
        if entity.id in remote_tombstones:
            continue
        logger.debug(f"Safe pull (new) {entity.kind.value} {entity.id} v{entity.version}")
        plan.safe_pulls.append(
            SyncItem(entity.kind, entity.id, None, entity.version, "created remotely")
        )

    logger.info(
        f"Classified: {len(plan.safe_pulls)} pulls, {len(plan.safe_pushes)} pushes, "
        f"{len(plan.conflicts)} conflicts, {len(plan.local_deletions)} placeholder discards"
    )
    return plan


def _classify_entity(
    plan: SyncPlan,
    local: AnyEntity,
    remote: AnyEntity | None,
    dirty: bool,
    reason: str,
    client_id: str,
) -> None:
    if remote is None:
        if dirty:
            logger.debug(f"Safe push (new) {local.kind.value} {local.id}")
            plan.safe_pushes.append(
                SyncItem(local.kind, local.id, local.version, None, reason or "created locally")
            )
        return

    item = SyncItem(local.kind, local.id, local.version, remote.version, reason)
    remote_ahead = remote.version > local.version

    if remote_ahead and dirty and remote.last_modifier != client_id:
        logger.debug(
            f"Conflict on {local.kind.value} {local.id}: local v{local.version} (dirty) "
            f"vs remote v{remote.version} by {remote.last_modifier}"
        )
        item.reason = "modified on both sides"
        plan.conflicts.append(item)
    elif remote_ahead:
        logger.debug(
            f"Safe pull {local.kind.value} {local.id}: v{local.version} -> v{remote.version}"
        )
        item.reason = item.reason or "remote ahead"
        plan.safe_pulls.append(item)
    elif dirty:
        logger.debug(f"Safe push {local.kind.value} {local.id} v{local.version}")
        item.reason = item.reason or "modified locally"
        plan.safe_pushes.append(item)
