"""Wires settings, stores, the tree and the sync engine together."""

import logging
from dataclasses import dataclass

from .config import Settings, load_or_create_client_id
from .storage.drive import DriveCredentials, DriveRemoteAdapter
from .storage.local import LocalDiskBlobStore
from .storage.remote import RemoteAdapter
from .storage.s3 import S3RemoteAdapter
from .sync.auth import CredentialRefresher, GoogleTokenRefresher
from .sync.engine import SyncEngine
from .sync.oplog import SyncOperationLog
from .tree.persistence import TreePersistence
from .tree.tree import MetadataTree

logger = logging.getLogger(__name__)


class WorkspaceError(Exception):
    """The configuration does not describe a usable workspace."""


@dataclass
class Workspace:
    settings: Settings
    client_id: str
    persistence: TreePersistence
    tree: MetadataTree
    oplog: SyncOperationLog
    engine: SyncEngine | None = None

    async def aclose(self) -> None:
        await self.persistence.close()
        if self.engine is not None:
            await self.engine.aclose()


def build_remote(
    settings: Settings,
) -> tuple[RemoteAdapter | None, CredentialRefresher | None]:
    """Create the configured remote adapter and its credential refresher.

    Raises:
        WorkspaceError: If the selected backend is missing required settings
    """
    if settings.remote_backend == "none":
        return None, None

    if settings.remote_backend == "s3":
        if not settings.s3_bucket:
            raise WorkspaceError("CUADERNO_S3_BUCKET is required for the s3 backend")
        adapter = S3RemoteAdapter(
            settings.s3_bucket,
            settings.s3_prefix,
            region_name=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )
        # boto3 refreshes its own credentials; nothing to do silently
        return adapter, None

    credentials_file = settings.resolved_drive_credentials_file
    credentials = DriveCredentials.load(credentials_file)
    if credentials is None:
        raise WorkspaceError(f"No Drive credentials found at {credentials_file}")

    refresher = None
    if settings.google_client_id:
        refresher = GoogleTokenRefresher(
            credentials,
            credentials_file,
            settings.google_client_id,
            settings.google_client_secret,
        )
    return DriveRemoteAdapter(credentials), refresher


async def open_workspace(settings: Settings) -> Workspace:
    """Load the local tree and, if a backend is configured, build the engine."""
    data_dir = settings.resolved_data_dir
    client_id = load_or_create_client_id(data_dir)

    store = LocalDiskBlobStore(settings.blob_dir)
    persistence = TreePersistence(
        store, client_id, debounce_seconds=settings.save_debounce_seconds
    )
    tree = await persistence.load()
    oplog = SyncOperationLog(data_dir)

    workspace = Workspace(
        settings=settings,
        client_id=client_id,
        persistence=persistence,
        tree=tree,
        oplog=oplog,
    )

    adapter, refresher = build_remote(settings)
    if adapter is not None:
        workspace.engine = SyncEngine(
            client_id,
            tree,
            persistence,
            adapter,
            root_folder_name=settings.root_folder_name,
            root_id_file=settings.root_id_file,
            refresher=refresher,
            oplog=oplog,
            retry_delay_seconds=settings.retry_delay_seconds,
        )
        logger.debug(f"Remote backend: {settings.remote_backend}")

    return workspace
