"""Multi-device scenarios for the sync engine against an in-memory remote."""

from unittest.mock import AsyncMock, Mock

import pytest

from cuaderno.storage.local import page_key
from cuaderno.storage.remote import RemoteError
from cuaderno.sync.auth import CredentialRefresher
from cuaderno.sync.engine import SyncEngine, SyncStatus
from cuaderno.sync.exceptions import NoConflictError, SyncBusyError
from cuaderno.sync.oplog import SyncOperationLog


def bump_first_notebook(remote):
    """Simulate another device publishing a new notebook version."""
    manifest = remote.manifest()
    manifest.notebooks[0].version += 1
    manifest.notebooks[0].last_modifier = "C"
    remote.put_manifest(manifest)


async def synced_pair(make_device):
    """Devices A and B sharing notebook N with page P, both clean at v1."""
    a = await make_device("A")
    notebook = a.tree.create_notebook("N")
    page = a.tree.create_page("P", notebook.id)
    await a.engine.sync(manual=True)

    b = await make_device("B")
    await b.engine.sync(manual=True)
    return a, b, notebook.id, page.id


def mock_refresher(succeeds: bool):
    refresher = Mock(spec=CredentialRefresher)
    refresher.refresh = AsyncMock(return_value=succeeds)
    return refresher


class TestInitialUpload:
    """Tests for seeding an empty remote."""

    @pytest.mark.asyncio
    async def test_first_device_uploads_everything(self, make_device, fake_remote):
        a = await make_device("A")
        notebook = a.tree.create_notebook("N1")
        page = a.tree.create_page("Sketch", notebook.id)

        outcome = await a.engine.sync(manual=True)

        assert outcome.initial_upload
        assert a.engine.status is SyncStatus.IDLE
        assert a.engine.last_sync_time is not None
        local = a.tree.get(notebook.id)
        assert local.version == 1
        assert not local.dirty
        remote = fake_remote.manifest()
        assert remote.get(local.kind, notebook.id).version == 1
        assert fake_remote.content(page_key(page.id)) == b"{}"

    @pytest.mark.asyncio
    async def test_second_device_pulls_everything(self, make_device):
        a, b, notebook_id, page_id = await synced_pair(make_device)

        assert b.tree.get(notebook_id).name == "N"
        assert b.tree.get(page_id).version == 1
        assert not b.tree.dirty_entities()
        assert await b.store.get(page_key(page_id)) == b"{}"

    @pytest.mark.asyncio
    async def test_seeded_placeholders_discarded_against_existing_data(
        self, make_device
    ):
        a = await make_device("A")
        a.tree.create_notebook("Real")
        await a.engine.sync(manual=True)

        b = await make_device("B", seed=True)
        [placeholder_page] = b.tree.manifest.pages.values()
        outcome = await b.engine.sync(manual=True)

        assert [n.name for n in b.tree.notebooks] == ["Real"]
        assert placeholder_page.id in outcome.discarded
        assert await b.store.get(page_key(placeholder_page.id)) is None
        assert placeholder_page.id not in b.tree.tombstones


class TestSafeChanges:
    """Tests for non-conflicting pushes and pulls."""

    @pytest.mark.asyncio
    async def test_edit_propagates(self, make_device, fake_remote):
        a, b, _, page_id = await synced_pair(make_device)

        a.tree.update_page_content(page_id, b"A-ink")
        await a.engine.sync(manual=True)
        await b.engine.sync(manual=True)

        assert a.tree.get(page_id).version == 2
        assert b.tree.get(page_id).version == 2
        assert b.tree.get(page_id).last_modifier == "A"
        assert await b.store.get(page_key(page_id)) == b"A-ink"

    @pytest.mark.asyncio
    async def test_noop_pass_writes_nothing(self, make_device, fake_remote):
        a, b, _, _ = await synced_pair(make_device)
        fake_remote.calls.clear()

        outcome = await b.engine.sync(manual=True)

        assert not outcome.remote_written
        assert "update_file" not in fake_remote.calls

    @pytest.mark.asyncio
    async def test_tombstones_propagate(self, make_device):
        a = await make_device("A")
        notebook = a.tree.create_notebook("N")
        folder = a.tree.create_folder("F", notebook.id)
        inner = a.tree.create_page("Q", folder.id)
        await a.engine.sync(manual=True)
        b = await make_device("B")
        await b.engine.sync(manual=True)
        assert b.tree.get(inner.id)

        a.tree.delete(folder.id)
        await a.engine.sync(manual=True)
        await b.engine.sync(manual=True)

        ids = b.tree.manifest.entity_ids()
        assert folder.id not in ids and inner.id not in ids
        assert {folder.id, inner.id} <= set(b.tree.tombstones)

    @pytest.mark.asyncio
    async def test_own_push_is_not_downloaded_again(self, make_device, fake_remote):
        a, _, _, page_id = await synced_pair(make_device)
        manifest = fake_remote.manifest()
        manifest.pages[page_id].version = 2
        manifest.pages[page_id].last_modifier = "A"
        fake_remote.put_manifest(manifest)
        page_file = fake_remote._find_local(page_key(page_id))
        fake_remote.files[page_file]["content"] = b"should not be fetched"
        a.tree.record_self_push(page_id, 2)

        await a.engine.sync(manual=True)

        assert a.tree.get(page_id).version == 2
        assert await a.store.get(page_key(page_id)) == b"{}"

    @pytest.mark.asyncio
    async def test_active_state_last_writer_wins(self, make_device):
        a, b, notebook_id, _ = await synced_pair(make_device)
        second = a.tree.create_notebook("Second")
        await a.engine.sync(manual=True)

        await b.engine.sync(manual=True)

        assert b.tree.active_state.notebook_id == second.id

    @pytest.mark.asyncio
    async def test_operations_logged(self, make_device, tmp_path):
        oplog = SyncOperationLog(tmp_path)
        a = await make_device("A", oplog=oplog)
        notebook = a.tree.create_notebook("N")
        await a.engine.sync(manual=True)

        notebook = a.tree.rename(notebook.id, "Renamed")
        await a.engine.sync(manual=True)

        pushes = [op for op in oplog.recent(entity_id=notebook.id) if op.op_type == "push"]
        assert pushes and pushes[-1].metadata["version"] == 2


class TestConflicts:
    """Tests for concurrent edits on two devices."""

    async def make_conflict(self, make_device):
        a, b, notebook_id, page_id = await synced_pair(make_device)
        a.tree.update_page_content(page_id, b"A-ink")
        await a.engine.sync(manual=True)
        b.tree.update_page_content(page_id, b"B-ink")
        await b.engine.sync(manual=True)
        return a, b, page_id

    @pytest.mark.asyncio
    async def test_concurrent_edit_is_a_conflict(self, make_device):
        a, b, page_id = await self.make_conflict(make_device)

        assert b.engine.status is SyncStatus.CONFLICT
        assert b.engine.conflicts.ids == {page_id}
        assert b.engine.conflicts.remote.pages[page_id].version == 2

    @pytest.mark.asyncio
    async def test_keep_local(self, make_device, fake_remote):
        a, b, page_id = await self.make_conflict(make_device)

        await b.engine.resolve_conflict("local")

        assert b.engine.status is SyncStatus.IDLE
        assert b.tree.get(page_id).version == 3
        assert not b.tree.get(page_id).dirty
        assert fake_remote.manifest().pages[page_id].version == 3
        assert fake_remote.content(page_key(page_id)) == b"B-ink"

        await a.engine.sync(manual=True)
        assert a.tree.get(page_id).version == 3
        assert await a.store.get(page_key(page_id)) == b"B-ink"

    @pytest.mark.asyncio
    async def test_keep_remote(self, make_device, fake_remote):
        a, b, page_id = await self.make_conflict(make_device)

        await b.engine.resolve_conflict("remote")

        page = b.tree.get(page_id)
        assert b.engine.status is SyncStatus.IDLE
        assert page.version == 2
        assert not page.dirty
        assert await b.store.get(page_key(page_id)) == b"A-ink"

    @pytest.mark.asyncio
    async def test_safe_pushes_survive_conflict(self, make_device, fake_remote):
        a, b, page_id = await self.make_conflict(make_device)
        # B was in conflict; start over with an extra unrelated change
        await b.engine.resolve_conflict("remote")
        a.tree.update_page_content(page_id, b"A-again")
        await a.engine.sync(manual=True)
        b.tree.update_page_content(page_id, b"B-again")
        extra = b.tree.create_notebook("Extra")

        await b.engine.sync(manual=True)

        assert b.engine.status is SyncStatus.CONFLICT
        assert fake_remote.manifest().get(extra.kind, extra.id) is not None

    @pytest.mark.asyncio
    async def test_sync_refused_while_conflicted(self, make_device):
        _, b, _ = await self.make_conflict(make_device)

        with pytest.raises(SyncBusyError):
            await b.engine.sync(manual=True)
        assert await b.engine.sync() is None

    @pytest.mark.asyncio
    async def test_resolve_without_conflict(self, make_device):
        a = await make_device("A")

        with pytest.raises(NoConflictError):
            await a.engine.resolve_conflict("local")


class TestGuard:
    """Tests for the optimistic concurrency guard."""

    @pytest.mark.asyncio
    async def test_concurrent_write_aborts_and_retries(self, make_device, fake_remote):
        a, b, notebook_id, _ = await synced_pair(make_device)
        extra = b.tree.create_page("R", notebook_id)
        fake_remote.manifest_read_hooks.append(bump_first_notebook)

        outcome = await b.engine.sync(manual=True)

        assert outcome is None
        assert b.engine.status is SyncStatus.IDLE
        retry = b.engine.pending_retry
        assert retry is not None
        await retry

        assert b.engine.status is SyncStatus.IDLE
        assert b.tree.get(notebook_id).version == 2
        assert fake_remote.manifest().pages[extra.id].version == 2

    @pytest.mark.asyncio
    async def test_aborted_push_leaves_no_self_push_marker(self, make_device, fake_remote):
        a, b, _, page_id = await synced_pair(make_device)
        b.tree.update_page_content(page_id, b"{\"strokes\": 1}")
        fake_remote.manifest_read_hooks.append(bump_first_notebook)

        await b.engine.sync(manual=True)

        assert not b.tree.is_self_authored(page_id, 2)
        await b.engine.pending_retry
        assert b.tree.is_self_authored(page_id, 2)
        assert fake_remote.manifest().pages[page_id].version == 2

    @pytest.mark.asyncio
    async def test_second_abort_is_an_error(self, make_device, fake_remote):
        a, b, notebook_id, _ = await synced_pair(make_device)
        b.tree.create_page("R", notebook_id)
        fake_remote.manifest_read_hooks.extend(
            [bump_first_notebook, lambda remote: None, bump_first_notebook]
        )

        await b.engine.sync(manual=True)
        await b.engine.pending_retry

        assert b.engine.status is SyncStatus.ERROR
        assert "Remote changes detected" in b.engine.error

        # A manual pass may restart from error
        outcome = await b.engine.sync(manual=True)
        assert outcome is not None
        assert b.engine.status is SyncStatus.IDLE
        assert b.engine.error is None


class TestFailures:
    """Tests for remote and credential failures."""

    @pytest.mark.asyncio
    async def test_remote_error_sets_error_state(self, make_device, fake_remote):
        a = await make_device("A")
        fake_remote.error = RemoteError("service unavailable")

        assert await a.engine.sync(manual=True) is None

        assert a.engine.status is SyncStatus.ERROR
        assert "service unavailable" in a.engine.error
        assert await a.engine.sync() is None

    @pytest.mark.asyncio
    async def test_silent_refresh_recovers(self, make_device, fake_remote):
        refresher = mock_refresher(True)
        a = await make_device("A", refresher=refresher)
        a.tree.create_notebook("N")
        fake_remote.auth_failures = 1

        outcome = await a.engine.sync(manual=True)

        assert outcome.initial_upload
        refresher.refresh.assert_awaited_once()
        refresher.clear.assert_not_called()
        assert not a.engine.needs_reauthentication

    @pytest.mark.asyncio
    async def test_failed_refresh_requires_sign_in(self, make_device, fake_remote):
        refresher = mock_refresher(False)
        a = await make_device("A", refresher=refresher)
        fake_remote.auth_failures = 1

        await a.engine.sync(manual=True)

        assert a.engine.status is SyncStatus.ERROR
        assert a.engine.needs_reauthentication
        refresher.clear.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_refresher_requires_sign_in(self, make_device, fake_remote):
        a = await make_device("A")
        fake_remote.auth_failures = 5

        await a.engine.sync(manual=True)

        assert a.engine.needs_reauthentication


class TestLifecycle:
    """Tests for listeners, construction and sign-out."""

    @pytest.mark.asyncio
    async def test_status_listeners(self, make_device):
        a = await make_device("A")
        seen = []
        unsubscribe = a.engine.subscribe(seen.append)

        await a.engine.sync(manual=True)
        unsubscribe()
        await a.engine.sync(manual=True)

        assert seen == [SyncStatus.SAVING_TO_DISK, SyncStatus.SYNCING, SyncStatus.IDLE]

    @pytest.mark.asyncio
    async def test_client_id_mismatch(self, make_device, fake_remote):
        a = await make_device("A")

        with pytest.raises(ValueError):
            SyncEngine("B", a.tree, a.persistence, fake_remote)

    @pytest.mark.asyncio
    async def test_stale_root_id_recovered(self, make_device, fake_remote, tmp_path):
        a = await make_device("A")
        a.tree.create_notebook("N")
        await a.engine.sync(manual=True)
        real_root = a.engine.workspace.root_id
        root_file = tmp_path / "remote-root-id"
        root_file.write_text("deleted-root")

        b = await make_device("B", root_id_file=root_file)
        await b.engine.sync(manual=True)

        assert b.engine.workspace.root_id == real_root
        assert root_file.read_text() == real_root
        assert [n.name for n in b.tree.notebooks] == ["N"]

    @pytest.mark.asyncio
    async def test_sign_out_deletes_remote(self, make_device, fake_remote):
        refresher = mock_refresher(True)
        a = await make_device("A", refresher=refresher)
        a.tree.create_notebook("N")
        await a.engine.sync(manual=True)

        await a.engine.sign_out(delete_remote=True)

        assert fake_remote.files == {}
        assert a.engine.workspace.root_id is None
        refresher.clear.assert_called_once()
        assert a.engine.status is SyncStatus.IDLE
