"""Shared fixtures: an in-memory remote and a factory for simulated devices."""

import itertools
from dataclasses import dataclass
from typing import Callable

import pytest

from cuaderno.storage.local import METADATA_KEY, MemoryBlobStore
from cuaderno.storage.remote import (
    AuthenticationError,
    RemoteAdapter,
    RemoteError,
    RemoteFileMetadata,
    RemoteHandle,
    RemoteNotFoundError,
)
from cuaderno.sync.engine import SyncEngine
from cuaderno.tree.models import Manifest
from cuaderno.tree.persistence import TreePersistence
from cuaderno.tree.tree import MetadataTree


class FakeRemoteAdapter(RemoteAdapter):
    """In-memory remote shared by several devices.

    ``manifest_read_hooks`` are popped and called (with the adapter) after
    each manifest download, which lets a test write to the remote between a
    pass's classification and its guard check. ``auth_failures`` makes the
    next N calls raise ``AuthenticationError``.
    """

    def __init__(self):
        self.files: dict[str, dict] = {}
        self._ids = itertools.count(1)
        self.manifest_read_hooks: list[Callable[["FakeRemoteAdapter"], None]] = []
        self.auth_failures = 0
        self.error: Exception | None = None
        self.calls: list[str] = []

    def _check(self, call: str) -> None:
        self.calls.append(call)
        if self.auth_failures > 0:
            self.auth_failures -= 1
            raise AuthenticationError("token expired")
        if self.error is not None:
            raise self.error

    async def find_by_name(self, name, parent_id=None):
        self._check("find_by_name")
        for file_id, f in self.files.items():
            if f["name"] == name and (parent_id is None or f["parent"] == parent_id):
                return RemoteHandle(id=file_id, name=name)
        return None

    async def create_folder(self, name, parent_id=None):
        self._check("create_folder")
        file_id = f"folder-{next(self._ids)}"
        self.files[file_id] = {
            "name": name, "parent": parent_id, "content": b"", "version": 1
        }
        return file_id

    async def create_file(self, name, content, parent_id):
        self._check("create_file")
        file_id = f"file-{next(self._ids)}"
        self.files[file_id] = {
            "name": name, "parent": parent_id, "content": bytes(content), "version": 1
        }
        return file_id

    async def update_file(self, file_id, content):
        self._check("update_file")
        if file_id not in self.files:
            raise RemoteNotFoundError(file_id)
        self.files[file_id]["content"] = bytes(content)
        self.files[file_id]["version"] += 1

    async def get_file_content(self, file_id):
        self._check("get_file_content")
        if file_id not in self.files:
            raise RemoteNotFoundError(file_id)
        content = self.files[file_id]["content"]
        if self.files[file_id]["name"] == METADATA_KEY and self.manifest_read_hooks:
            self.manifest_read_hooks.pop(0)(self)
        return content

    async def delete_file(self, file_id):
        self._check("delete_file")
        if file_id not in self.files:
            raise RemoteNotFoundError(file_id)
        doomed = {file_id} | {fid for fid, f in self.files.items() if f["parent"] == file_id}
        for fid in doomed:
            del self.files[fid]

    async def get_metadata(self, file_id):
        self._check("get_metadata")
        if file_id not in self.files:
            raise RemoteNotFoundError(file_id)
        f = self.files[file_id]
        return RemoteFileMetadata(id=file_id, version=str(f["version"]), name=f["name"])

    # -- test helpers ----------------------------------------------------

    def _find_local(self, name: str) -> str | None:
        return next((fid for fid, f in self.files.items() if f["name"] == name), None)

    def manifest(self) -> Manifest | None:
        file_id = self._find_local(METADATA_KEY)
        if file_id is None:
            return None
        return Manifest.from_json(self.files[file_id]["content"])

    def put_manifest(self, manifest: Manifest) -> None:
        """Overwrite the remote manifest as another device would."""
        file_id = self._find_local(METADATA_KEY)
        self.files[file_id]["content"] = manifest.to_json(include_dirty=False)
        self.files[file_id]["version"] += 1

    def content(self, name: str) -> bytes | None:
        file_id = self._find_local(name)
        return None if file_id is None else self.files[file_id]["content"]


@dataclass
class Device:
    client_id: str
    store: MemoryBlobStore
    persistence: TreePersistence
    tree: MetadataTree
    engine: SyncEngine


@pytest.fixture
def fake_remote():
    return FakeRemoteAdapter()


@pytest.fixture
def make_device(fake_remote):
    """Factory for devices sharing ``fake_remote``.

    Devices start from an empty tree unless ``seed=True``, in which case the
    first-run placeholders are created.
    """

    async def factory(
        client_id: str, *, seed: bool = False, refresher=None, oplog=None, root_id_file=None
    ):
        initial = {} if seed else {METADATA_KEY: Manifest().to_json()}
        store = MemoryBlobStore(initial)
        persistence = TreePersistence(store, client_id, debounce_seconds=0.01)
        tree = await persistence.load()
        engine = SyncEngine(
            client_id,
            tree,
            persistence,
            fake_remote,
            root_id_file=root_id_file,
            refresher=refresher,
            oplog=oplog,
            retry_delay_seconds=0.01,
        )
        return Device(client_id, store, persistence, tree, engine)

    return factory
