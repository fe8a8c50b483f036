"""Tests for classifying local and remote changes."""

from cuaderno.sync.classifier import classify
from cuaderno.tree.models import Folder, Manifest, Notebook, Page


def manifest(*entities, tombstones=()) -> Manifest:
    result = Manifest()
    for entity in entities:
        result.put(entity)
    result.merge_tombstones(tombstones)
    return result


def page(pid="p", *, version=1, dirty=False, modifier="A", placeholder=False, parent="n"):
    return Page(
        id=pid,
        notebook_id="n",
        parent_id=parent,
        version=version,
        dirty=dirty,
        last_modifier=modifier,
        is_placeholder=placeholder,
    )


class TestClassify:
    """Tests for classify."""

    def test_remote_ahead_and_local_dirty_by_other_device_conflicts(self):
        local = manifest(Notebook(id="n"), page(version=1, dirty=True))
        remote = manifest(Notebook(id="n"), page(version=2, modifier="B"))

        plan = classify(local, remote, "A")

        assert plan.conflict_ids == {"p"}
        assert plan.pull_ids == set()
        assert plan.push_ids == set()

    def test_remote_ahead_by_self_is_a_pull(self):
        """Test that our own earlier push is never a conflict."""
        local = manifest(Notebook(id="n"), page(version=1, dirty=True))
        remote = manifest(Notebook(id="n"), page(version=2, modifier="A"))

        plan = classify(local, remote, "A")

        assert not plan.has_conflicts
        assert plan.pull_ids == {"p"}

    def test_remote_ahead_local_clean_pulls(self):
        local = manifest(Notebook(id="n"), page(version=1))
        remote = manifest(Notebook(id="n"), page(version=3, modifier="B"))

        assert classify(local, remote, "A").pull_ids == {"p"}

    def test_dirty_not_behind_pushes(self):
        local = manifest(Notebook(id="n"), page(version=2, dirty=True))
        remote = manifest(Notebook(id="n"), page(version=2, modifier="B"))

        plan = classify(local, remote, "A")

        assert plan.push_ids == {"p"}
        assert plan.safe_pushes[0].remote_version == 2

    def test_local_only_dirty_pushes(self):
        local = manifest(Notebook(id="n", dirty=True), page(dirty=True))

        plan = classify(local, manifest(Notebook(id="x")), "A")

        assert plan.push_ids == {"n", "p"}

    def test_local_only_clean_is_left_alone(self):
        local = manifest(Notebook(id="n"), page())

        plan = classify(local, manifest(Notebook(id="x")), "A")

        assert plan.push_ids == set()
        assert plan.pull_ids == {"x"}

    def test_remote_only_is_pulled(self):
        remote = manifest(Notebook(id="n"), Folder(id="f", notebook_id="n", parent_id="n"))

        plan = classify(manifest(), remote, "A")

        assert plan.pull_ids == {"n", "f"}

    def test_remote_only_locally_tombstoned_is_not_pulled(self):
        remote = manifest(Notebook(id="n"), page())
        local = manifest(Notebook(id="n"), tombstones=["p"])

        assert classify(local, remote, "A").pull_ids == set()

    def test_remotely_tombstoned_local_entity_is_skipped(self):
        local = manifest(Notebook(id="n"), page(dirty=True))
        remote = manifest(Notebook(id="n"), tombstones=["p"])

        plan = classify(local, remote, "A")

        assert plan.total_operations == 0
        assert not plan.has_conflicts

    def test_lists_are_disjoint(self):
        local = manifest(
            Notebook(id="n", version=3, dirty=True),
            page("a", version=1, dirty=True),
            page("b", version=1),
            page("c", version=5, dirty=True),
        )
        remote = manifest(
            Notebook(id="n", version=3),
            page("a", version=2, modifier="B"),
            page("b", version=2, modifier="B"),
            page("c", version=4, modifier="B"),
            page("d", version=1, modifier="B"),
        )

        plan = classify(local, remote, "A")

        assert plan.conflict_ids == {"a"}
        assert plan.pull_ids == {"b", "d"}
        assert plan.push_ids == {"n", "c"}


class TestPlaceholders:
    """Tests for the first-run placeholder rules."""

    def test_untouched_placeholders_discarded_when_remote_has_data(self):
        local = manifest(
            Notebook(id="seed", is_placeholder=True),
            page("sp", placeholder=True, parent="seed"),
        )
        remote = manifest(Notebook(id="real"))

        plan = classify(local, remote, "A")

        assert {item.id for item in plan.local_deletions} == {"seed", "sp"}
        assert plan.push_ids == set()
        assert plan.pull_ids == {"real"}

    def test_placeholders_kept_when_remote_is_empty(self):
        local = manifest(Notebook(id="seed", is_placeholder=True))

        plan = classify(local, manifest(), "A")

        assert plan.local_deletions == []

    def test_placeholder_container_with_real_child_is_promoted(self):
        """Test that a user page inside a placeholder notebook keeps its parent."""
        local = manifest(
            Notebook(id="n", is_placeholder=True),
            page("mine", dirty=True),
        )
        remote = manifest(Notebook(id="other"))

        plan = classify(local, remote, "A")

        assert plan.push_ids == {"n", "mine"}
        promoted = next(item for item in plan.safe_pushes if item.id == "n")
        assert promoted.reason == "placeholder promotion"
        assert plan.local_deletions == []

    def test_edited_placeholder_is_pushed(self):
        local = manifest(Notebook(id="n", is_placeholder=True, dirty=True))

        plan = classify(local, manifest(Notebook(id="other")), "A")

        assert plan.push_ids == {"n"}
