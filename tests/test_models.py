"""Tests for entity and manifest models."""

import json

from cuaderno.tree.models import (
    ActiveState,
    EntityKind,
    Folder,
    Manifest,
    Notebook,
    Page,
    deduplicate,
)


def make_manifest() -> Manifest:
    manifest = Manifest(client_id="A")
    manifest.put(Notebook(id="n1", name="Work", order=10000, version=2, dirty=True))
    manifest.put(Folder(id="f1", name="Ideas", notebook_id="n1", parent_id="n1"))
    manifest.put(Page(id="p1", name="Todo", notebook_id="n1", parent_id="f1"))
    return manifest


class TestWireFormat:
    """Tests for the camelCase manifest document."""

    def test_round_trip_keeps_fields(self):
        """Test that a manifest survives serialization."""
        manifest = make_manifest()
        manifest.merge_tombstones(["gone"])
        manifest.apply_active_state(
            ActiveState(notebook_id="n1", path=["f1"], page_id="p1", updated_at=5, modifier="A")
        )

        loaded = Manifest.from_json(manifest.to_json())

        assert loaded.get(EntityKind.NOTEBOOK, "n1").version == 2
        assert loaded.pages["p1"].parent_id == "f1"
        assert loaded.deleted_item_ids == ["gone"]
        assert loaded.active_state == manifest.active_state

    def test_camel_case_keys(self):
        """Test that the document uses the wire key names."""
        data = json.loads(make_manifest().to_json())

        assert set(data) == {
            "notebooks",
            "folders",
            "pages",
            "deletedItemIds",
            "activeNotebookId",
            "activePath",
            "activePageId",
            "activeStateUpdatedAt",
            "activeStateModifier",
            "clientId",
        }
        assert data["pages"]["p1"]["notebookId"] == "n1"
        assert "lastModifier" in data["notebooks"][0]

    def test_remote_copy_has_no_dirty_flags(self):
        """Test that include_dirty=False strips dirty flags."""
        data = json.loads(make_manifest().to_json(include_dirty=False))

        assert "dirty" not in data["notebooks"][0]
        assert "dirty" not in data["pages"]["p1"]

    def test_placeholder_flag_only_when_set(self):
        """Test that isPlaceholder is written only for placeholders."""
        manifest = make_manifest()
        manifest.put(Notebook(id="seed", name="Untitled", is_placeholder=True))
        data = json.loads(manifest.to_json())
        flags = {n["id"]: n.get("isPlaceholder") for n in data["notebooks"]}

        assert flags == {"n1": None, "seed": True}

    def test_null_parent_means_notebook(self):
        """Test that a null parentId resolves to the notebook."""
        page = Page.model_validate({"id": "p", "notebookId": "n", "parentId": None})

        assert page.parent_id == "n"

    def test_legacy_base_version(self):
        """Test that baseVersion documents derive the dirty flag."""
        changed = Notebook.model_validate({"id": "a", "version": 3, "baseVersion": 2})
        same = Notebook.model_validate({"id": "b", "version": 2, "baseVersion": 2})

        assert changed.dirty is True
        assert same.dirty is False

    def test_unknown_fields_ignored(self):
        """Test that extra keys from newer clients do not break parsing."""
        manifest = Manifest.from_json(
            json.dumps({"notebooks": [{"id": "n", "shiny": True}], "future": 1})
        )

        assert manifest.notebooks[0].id == "n"


class TestDeduplicate:
    """Tests for the duplicate-record rule."""

    def test_higher_version_wins(self):
        kept = deduplicate(
            [Notebook(id="n", name="old", version=1), Notebook(id="n", name="new", version=2)]
        )

        assert [n.name for n in kept] == ["new"]

    def test_tie_prefers_dirty(self):
        kept = deduplicate(
            [
                Notebook(id="n", name="clean", version=2),
                Notebook(id="n", name="dirty", version=2, dirty=True),
            ]
        )

        assert [n.name for n in kept] == ["dirty"]

    def test_dirty_does_not_beat_higher_version(self):
        kept = deduplicate(
            [
                Notebook(id="n", name="dirty", version=1, dirty=True),
                Notebook(id="n", name="newer", version=3),
            ]
        )

        assert [n.name for n in kept] == ["newer"]

    def test_manifest_dedupes_notebooks_on_load(self):
        """Test that duplicate notebook entries collapse when parsed."""
        manifest = Manifest.from_json(
            json.dumps(
                {
                    "notebooks": [
                        {"id": "n", "name": "a", "version": 1},
                        {"id": "n", "name": "b", "version": 4},
                    ]
                }
            )
        )

        assert len(manifest.notebooks) == 1
        assert manifest.notebooks[0].name == "b"


class TestMisfiledRecords:
    """Tests for folders and pages stored under a key other than their id."""

    @staticmethod
    def load():
        return Manifest.from_json(
            json.dumps(
                {
                    "notebooks": [{"id": "n1", "name": "N"}],
                    "folders": {
                        "f1": {"id": "f1", "name": "old", "notebookId": "n1", "version": 1},
                        "f1-dup": {"id": "f1", "name": "new", "notebookId": "n1", "version": 3},
                    },
                    "pages": {
                        "stray": {"id": "p1", "name": "P", "notebookId": "n1", "parentId": "f1"},
                    },
                }
            )
        )

    def test_one_copy_per_id(self):
        manifest = self.load()

        assert [e.id for e in manifest.iter_entities()] == ["n1", "f1", "p1"]
        assert manifest.folders["f1"].name == "new"
        assert manifest.folders["f1"].version == 3

    def test_reachable_by_id(self):
        manifest = self.load()

        assert manifest.find("p1").name == "P"
        assert manifest.remove("p1").id == "p1"
        assert manifest.pages == {}

    def test_tombstone_strips_every_copy(self):
        manifest = self.load()
        manifest.merge_tombstones(["f1", "p1"])

        manifest.strip_tombstoned()

        assert manifest.entity_ids() == {"n1"}


class TestManifestHelpers:
    """Tests for manifest access helpers."""

    def test_find_and_remove(self):
        manifest = make_manifest()

        assert manifest.find("f1").kind is EntityKind.FOLDER
        assert manifest.remove("n1").id == "n1"
        assert manifest.find("n1") is None
        assert manifest.remove("missing") is None

    def test_tombstones_union_and_strip(self):
        manifest = make_manifest()
        manifest.merge_tombstones(["p1"])
        manifest.merge_tombstones(["p1", "f1"])

        assert manifest.deleted_item_ids == ["p1", "f1"]
        assert sorted(manifest.strip_tombstoned()) == ["f1", "p1"]
        assert manifest.entity_ids() == {"n1"}

    def test_is_empty(self):
        assert Manifest().is_empty
        assert not make_manifest().is_empty
