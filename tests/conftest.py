from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest

from drive_client import DriveApiError, RemoteChannel


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeDriveClient:
    def __init__(self):
        self.watch_calls: list[dict] = []
        self.stop_calls: list[tuple[str, str]] = []
        self.fail_watch = False
        self.fail_stop_ids: set[str] = set()
        self.granted_expiration: datetime | None = None
        self.clock: FakeClock | None = None
        self.watch_latency = timedelta(0)
        self._resource_seq = 0

    def watch_file(self, file_id, channel_id, address, token, expiration):
        if self.clock is not None and self.watch_latency:
            # Drive starts the lifetime when the request arrives.
            self.clock.advance(seconds=self.watch_latency.total_seconds())
            expiration += self.watch_latency
        self.watch_calls.append(
            {
                "file_id": file_id,
                "channel_id": channel_id,
                "address": address,
                "token": token,
                "expiration": expiration,
            }
        )
        if self.fail_watch:
            raise DriveApiError("files.watch exploded", status_code=500)
        self._resource_seq += 1
        return RemoteChannel(
            id=channel_id,
            resource_id=f"resource-{self._resource_seq}",
            expiration=self.granted_expiration or expiration,
        )

    def stop_channel(self, channel_id, resource_id):
        self.stop_calls.append((channel_id, resource_id))
        if channel_id in self.fail_stop_ids:
            raise DriveApiError("channels.stop exploded", status_code=500)

    @property
    def stopped_ids(self) -> list[str]:
        return [channel_id for channel_id, _ in self.stop_calls]


RELEVANT_ENV_KEYS = [
    "DRIVE_CREDENTIALS_FILE",
    "DRIVE_WEBHOOK_URL",
    "DRIVE_WATCH_FILE_ID",
    "WEBHOOK_HOST",
    "WEBHOOK_PORT",
    "WEBHOOK_PATH",
    "STATE_FILE",
    "CHANNEL_MAX_DURATION_SEC",
    "RENEW_INTERVAL_SEC",
    "RENEW_THRESHOLD_SEC",
    "HTTP_TIMEOUT_SEC",
    "DRIVE_API_BASE_URL",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
    "TELEGRAM_API_BASE_URL",
]


@pytest.fixture(autouse=True)
def _clear_relevant_env(monkeypatch):
    for key in RELEVANT_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    yield
    # load_dotenv writes straight into os.environ, outside monkeypatch's undo log.
    for key in RELEVANT_ENV_KEYS:
        os.environ.pop(key, None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_drive() -> FakeDriveClient:
    return FakeDriveClient()
