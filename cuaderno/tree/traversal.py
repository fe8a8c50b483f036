"""Parent-indexed traversal over a manifest.

Deletion, tombstoning, move validation, folder-path computation and the
placeholder check all walk the tree through ``TreeIndex`` so they agree on
descendant and cycle semantics.
"""

from collections import defaultdict

from .models import AnyEntity, Manifest


class TreeIndex:
    """Snapshot index of a manifest's parent/child links.

    The index is built once and does not follow later mutations of the
    manifest; build a new one after changing the tree.
    """

    def __init__(self, manifest: Manifest):
        self._entities: dict[str, AnyEntity] = {
            e.id: e for e in manifest.iter_entities()
        }
        self._children: dict[str, list[str]] = defaultdict(list)
        for entity in manifest.iter_entities():
            parent_id = getattr(entity, "parent_id", None)
            if parent_id is not None and parent_id != entity.id:
                self._children[parent_id].append(entity.id)

    def get(self, entity_id: str) -> AnyEntity | None:
        return self._entities.get(entity_id)

    def children(self, parent_id: str) -> list[AnyEntity]:
        """Direct children of ``parent_id`` sorted by ``order``."""
        kids = [self._entities[cid] for cid in self._children.get(parent_id, [])]
        return sorted(kids, key=lambda e: e.order)

    def descendants(self, root_id: str) -> list[str]:
        """All ids below ``root_id`` (excluding it), depth first.

        Iterative with a visited set, so a corrupted manifest containing a
        parent cycle terminates instead of recursing forever.
        """
        result: list[str] = []
        visited = {root_id}
        stack = list(reversed(self._children.get(root_id, [])))
        while stack:
            entity_id = stack.pop()
            if entity_id in visited:
                continue
            visited.add(entity_id)
            result.append(entity_id)
            stack.extend(reversed(self._children.get(entity_id, [])))
        return result

    def is_descendant(self, candidate_id: str, ancestor_id: str) -> bool:
        """True if ``candidate_id`` lies strictly below ``ancestor_id``."""
        return candidate_id in self.descendants(ancestor_id)

    def ancestors(self, entity_id: str) -> list[str]:
        """Container ids from the direct parent up to the notebook."""
        chain: list[str] = []
        seen = {entity_id}
        current = self._entities.get(entity_id)
        while current is not None:
            parent_id = getattr(current, "parent_id", None)
            if parent_id is None or parent_id in seen:
                break
            chain.append(parent_id)
            seen.add(parent_id)
            current = self._entities.get(parent_id)
        return chain

    def folder_path(self, entity_id: str) -> list[str]:
        """Folder ids from the notebook down to the entity's direct parent."""
        folders = [
            aid
            for aid in self.ancestors(entity_id)
            if aid in self._entities and getattr(self._entities[aid], "parent_id", None)
        ]
        return list(reversed(folders))

    def has_user_content(self, root_id: str) -> bool:
        """True if any descendant of ``root_id`` is modified or not a placeholder."""
        for did in self.descendants(root_id):
            entity = self._entities.get(did)
            if entity is not None and (entity.dirty or not entity.is_placeholder):
                return True
        return False
