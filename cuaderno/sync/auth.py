"""Silent credential refresh for remote adapters."""

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path

import httpx

from ..storage.drive import DriveCredentials

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


class CredentialRefresher(ABC):
    """Renews an expired credential without user interaction."""

    @abstractmethod
    async def refresh(self) -> bool:
        """Try a silent refresh.

        Returns:
            True if a fresh credential is now in place
        """

    @abstractmethod
    def clear(self) -> None:
        """Forget the stored credential; the user must sign in again."""


class GoogleTokenRefresher(CredentialRefresher):
    """Exchanges the stored refresh token for a new Drive access token."""

    def __init__(
        self,
        credentials: DriveCredentials,
        credentials_file: Path,
        client_id: str,
        client_secret: str | None = None,
        *,
        token_url: str = GOOGLE_TOKEN_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        # Shared with DriveRemoteAdapter so a refresh is picked up immediately
        self.credentials = credentials
        self.credentials_file = Path(credentials_file)
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.timeout = timeout
        self._transport = transport

    async def refresh(self) -> bool:
        if not self.credentials.refresh_token:
            logger.warning("No refresh token stored; cannot refresh silently")
            return False

        data = {
            "grant_type": "refresh_token",
            "refresh_token": self.credentials.refresh_token,
            "client_id": self.client_id,
        }
        if self.client_secret:
            data["client_secret"] = self.client_secret

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.token_url, data=data)
        except httpx.HTTPError as e:
            logger.error(f"Token refresh request failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(
                f"Token refresh rejected ({response.status_code}): {response.text[:200]}"
            )
            return False

        payload = response.json()
        self.credentials.access_token = payload["access_token"]
        if payload.get("refresh_token"):
            self.credentials.refresh_token = payload["refresh_token"]
        if payload.get("expires_in"):
            self.credentials.expires_at = time.time() + float(payload["expires_in"])
        self.credentials.save(self.credentials_file)

        logger.info("Refreshed Drive access token")
        return True

    def clear(self) -> None:
        self.credentials.access_token = ""
        self.credentials.refresh_token = None
        self.credentials.expires_at = None
        self.credentials_file.unlink(missing_ok=True)
        logger.info("Cleared stored Drive credentials")
