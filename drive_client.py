from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote

import requests
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account


LOG = logging.getLogger("drivewatch")
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive"
DEFAULT_API_BASE_URL = "https://www.googleapis.com/drive/v3"


class DriveApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class RemoteChannel:
    id: str
    resource_id: str
    expiration: datetime


def _to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_epoch_ms(raw: str | int) -> datetime:
    return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)


def load_service_account_session(credentials_file: Path) -> AuthorizedSession:
    credentials = service_account.Credentials.from_service_account_file(
        str(credentials_file),
        scopes=[DRIVE_SCOPE],
    )
    return AuthorizedSession(credentials)


class DriveClient:
    """Thin wrapper over the Drive v3 push-notification endpoints."""

    def __init__(
        self,
        session: requests.Session,
        api_base_url: str = DEFAULT_API_BASE_URL,
        timeout_sec: int = 20,
    ):
        self.session = session
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_sec = timeout_sec

    def _post(self, path: str, payload: dict, params: dict | None = None) -> requests.Response:
        url = f"{self.api_base_url}/{path.lstrip('/')}"
        try:
            return self.session.post(url, json=payload, params=params, timeout=self.timeout_sec)
        except requests.RequestException as exc:
            raise DriveApiError(f"HTTP request failed: {exc}") from exc

    @staticmethod
    def _error_from(response: requests.Response, action: str) -> DriveApiError:
        body = response.text
        snippet = (body[:200] + "...") if len(body) > 200 else body
        return DriveApiError(
            f"Drive {action} returned HTTP {response.status_code}: {snippet}",
            status_code=response.status_code,
        )

    def watch_file(
        self,
        file_id: str,
        channel_id: str,
        address: str,
        token: str,
        expiration: datetime,
    ) -> RemoteChannel:
        payload = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "token": token,
            "expiration": str(_to_epoch_ms(expiration)),
        }
        response = self._post(
            f"files/{quote(file_id, safe='')}/watch",
            payload,
            params={"supportsAllDrives": "true"},
        )
        if not response.ok:
            raise self._error_from(response, "files.watch")

        try:
            data = response.json()
            return RemoteChannel(
                id=str(data.get("id") or channel_id),
                resource_id=str(data["resourceId"]),
                expiration=_from_epoch_ms(data["expiration"]) if data.get("expiration") else expiration,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise DriveApiError(f"Unexpected files.watch response: {exc}") from exc

    def stop_channel(self, channel_id: str, resource_id: str) -> None:
        response = self._post("channels/stop", {"id": channel_id, "resourceId": resource_id})
        if response.status_code == 404:
            LOG.info("Channel %s is already gone on the Drive side", channel_id)
            return
        if not response.ok:
            raise self._error_from(response, "channels.stop")
