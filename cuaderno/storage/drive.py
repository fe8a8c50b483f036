"""Google Drive remote adapter.

Talks to the Drive v3 REST API directly with httpx. The adapter only reads
the access token from a ``DriveCredentials`` record; refreshing it is the
job of ``cuaderno.sync.auth.GoogleTokenRefresher``.
"""

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path

import httpx

from .remote import (
    AuthenticationError,
    RemoteAdapter,
    RemoteError,
    RemoteFileMetadata,
    RemoteHandle,
    RemoteNotFoundError,
)

logger = logging.getLogger(__name__)

DRIVE_API_BASE = "https://www.googleapis.com"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
CONTENT_MIME_TYPE = "application/json"


@dataclass
class DriveCredentials:
    """OAuth credential for the Drive API."""

    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None  # epoch seconds

    def is_expired(self, buffer_seconds: float = 300.0) -> bool:
        """True if the token is expired or expires within ``buffer_seconds``."""
        if self.expires_at is None:
            return False
        return time.time() + buffer_seconds > self.expires_at

    @classmethod
    def load(cls, path: Path) -> "DriveCredentials | None":
        """Load stored credentials, returning None if absent or unreadable."""
        path = Path(path)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
            return cls(**data)
        except (json.JSONDecodeError, TypeError, OSError) as e:
            logger.error(f"Failed to load Drive credentials: {e}")
            return None

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(self), indent=2))
        path.chmod(0o600)


def _escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class DriveRemoteAdapter(RemoteAdapter):
    """Remote adapter over the Google Drive v3 REST API."""

    def __init__(
        self,
        credentials: DriveCredentials,
        *,
        base_url: str = DRIVE_API_BASE,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.credentials = credentials
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def _request(
        self, method: str, url: str, what: str, **kwargs
    ) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self.credentials.access_token}"

        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Drive request failed for {what}: {e}")
            raise RemoteError(f"Drive request failed for {what}: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError(f"Drive rejected the access token ({what})")
        if response.status_code == 404:
            raise RemoteNotFoundError(f"Not found: {what}")
        if response.is_error:
            logger.error(
                f"Drive error {response.status_code} for {what}: {response.text[:200]}"
            )
            raise RemoteError(f"Drive error {response.status_code} for {what}")
        return response

    async def find_by_name(
        self, name: str, parent_id: str | None = None
    ) -> RemoteHandle | None:
        query = f"name='{_escape_query(name)}' and trashed=false"
        if parent_id:
            query += f" and '{_escape_query(parent_id)}' in parents"

        response = await self._request(
            "GET",
            "/drive/v3/files",
            name,
            params={"q": query, "fields": "files(id, name)"},
        )
        files = response.json().get("files") or []
        if not files:
            return None

        first = files[0]
        return RemoteHandle(id=first["id"], name=first.get("name", name))

    async def create_folder(self, name: str, parent_id: str | None = None) -> str:
        body = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            body["parents"] = [parent_id]

        response = await self._request(
            "POST", "/drive/v3/files", name, params={"fields": "id"}, json=body
        )
        folder_id = response.json()["id"]
        logger.info(f"Created Drive folder {name!r} ({folder_id})")
        return folder_id

    async def create_file(self, name: str, content: bytes, parent_id: str) -> str:
        boundary = f"cuaderno-{uuid.uuid4().hex}"
        metadata = {"name": name, "mimeType": CONTENT_MIME_TYPE, "parents": [parent_id]}
        body = b"".join(
            [
                f"--{boundary}\r\n".encode(),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                json.dumps(metadata).encode(),
                f"\r\n--{boundary}\r\n".encode(),
                f"Content-Type: {CONTENT_MIME_TYPE}\r\n\r\n".encode(),
                content,
                f"\r\n--{boundary}--".encode(),
            ]
        )

        response = await self._request(
            "POST",
            "/upload/drive/v3/files",
            name,
            params={"uploadType": "multipart", "fields": "id"},
            headers={"Content-Type": f'multipart/related; boundary="{boundary}"'},
            content=body,
        )
        file_id = response.json()["id"]
        logger.debug(f"Created Drive file {name!r} ({file_id}, {len(content)} bytes)")
        return file_id

    async def update_file(self, file_id: str, content: bytes) -> None:
        await self._request(
            "PATCH",
            f"/upload/drive/v3/files/{file_id}",
            file_id,
            params={"uploadType": "media"},
            content=content,
        )

    async def get_file_content(self, file_id: str) -> bytes:
        response = await self._request(
            "GET", f"/drive/v3/files/{file_id}", file_id, params={"alt": "media"}
        )
        return response.content

    async def delete_file(self, file_id: str) -> None:
        await self._request("DELETE", f"/drive/v3/files/{file_id}", file_id)
        logger.info(f"Deleted Drive file {file_id}")

    async def get_metadata(self, file_id: str) -> RemoteFileMetadata:
        response = await self._request(
            "GET",
            f"/drive/v3/files/{file_id}",
            file_id,
            params={"fields": "id, name, version, modifiedTime"},
        )
        data = response.json()
        return RemoteFileMetadata(
            id=data.get("id", file_id),
            version=data.get("version"),
            modified_time=_parse_timestamp(data.get("modifiedTime")),
            name=data.get("name"),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
