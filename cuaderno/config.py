"""
Configuration and device identity.

Settings come from ``CUADERNO_*`` environment variables (or a ``.env`` file).
"""

import logging
import uuid
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

CLIENT_ID_FILE = "client-id"
REMOTE_ROOT_ID_FILE = "remote-root-id"
DRIVE_CREDENTIALS_FILE = "drive-credentials.json"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CUADERNO_", env_file=".env", extra="ignore"
    )

    data_dir: Path = Path("~/.cuaderno")
    log_level: str = "INFO"

    # Remote storage
    remote_backend: Literal["none", "s3", "drive"] = "none"
    root_folder_name: str = "Cuaderno"

    # S3 backend
    s3_bucket: str | None = None
    s3_prefix: str = ""
    s3_endpoint_url: str | None = None
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    aws_region: str | None = None

    # Google Drive backend
    drive_credentials_file: Path | None = None
    google_client_id: str | None = None
    google_client_secret: str | None = None

    # Timing
    save_debounce_seconds: float = 1.0
    retry_delay_seconds: float = 0.5

    @property
    def resolved_data_dir(self) -> Path:
        return self.data_dir.expanduser()

    @property
    def blob_dir(self) -> Path:
        return self.resolved_data_dir / "blobs"

    @property
    def root_id_file(self) -> Path:
        return self.resolved_data_dir / REMOTE_ROOT_ID_FILE

    @property
    def resolved_drive_credentials_file(self) -> Path:
        if self.drive_credentials_file is not None:
            return self.drive_credentials_file.expanduser()
        return self.resolved_data_dir / DRIVE_CREDENTIALS_FILE


def load_or_create_client_id(data_dir: Path) -> str:
    """Return this device's id, generating and storing one on first use."""
    data_dir = Path(data_dir).expanduser()
    path = data_dir / CLIENT_ID_FILE

    if path.exists():
        client_id = path.read_text().strip()
        if client_id:
            return client_id

    client_id = str(uuid.uuid4())
    data_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(client_id)
    logger.info(f"Generated client id {client_id}")
    return client_id
