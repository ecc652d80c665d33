from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class ChannelInfo:
    id: str
    resource_id: str
    file_id: str
    expiration: datetime
    token: str | None = None

    def time_to_expiry(self, now: datetime) -> timedelta:
        return self.expiration - now

    def is_expired(self, now: datetime) -> bool:
        return self.expiration <= now

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "resource_id": self.resource_id,
            "file_id": self.file_id,
            "expiration": format_timestamp(self.expiration),
        }
        if self.token is not None:
            data["token"] = self.token
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChannelInfo":
        token = data.get("token")
        return cls(
            id=str(data["id"]),
            resource_id=str(data["resource_id"]),
            file_id=str(data["file_id"]),
            expiration=parse_timestamp(str(data["expiration"])),
            token=str(token) if token is not None else None,
        )
