from __future__ import annotations

import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Mapping

import fcntl

from models import ChannelInfo


class CorruptStateError(Exception):
    pass


class ChannelStore:
    def __init__(self, path: Path):
        self.path = path
        self.lock_path = path.with_suffix(path.suffix + ".lock")
        self.corrupt_path = path.with_suffix(path.suffix + ".corrupt")

    @contextmanager
    def _locked(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_fd = os.open(self.lock_path, os.O_CREAT | os.O_RDWR, 0o600)
        with os.fdopen(lock_fd, "r+") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read_unlocked(self) -> dict[str, ChannelInfo]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            raise CorruptStateError(f"Failed to read state file {self.path}: {exc}") from exc
        return _decode(data, self.path)

    def _write_unlocked(self, channels: Mapping[str, ChannelInfo]) -> None:
        if not channels:
            self.path.unlink(missing_ok=True)
            return
        document = {
            "channels": {channel_id: info.to_dict() for channel_id, info in channels.items()}
        }
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with temp_path.open("w", encoding="utf-8") as fh:
            json.dump(document, fh, indent=2, sort_keys=True)
            fh.write("\n")
        os.replace(temp_path, self.path)

    def load(self) -> dict[str, ChannelInfo]:
        with self._locked():
            return self._read_unlocked()

    def save(self, channels: Mapping[str, ChannelInfo]) -> None:
        with self._locked():
            self._write_unlocked(channels)

    def quarantine(self) -> Path | None:
        with self._locked():
            if not self.path.exists():
                return None
            os.replace(self.path, self.corrupt_path)
            return self.corrupt_path


def _decode(data: Any, path: Path) -> dict[str, ChannelInfo]:
    if not isinstance(data, dict):
        raise CorruptStateError(f"State file {path} is not a JSON object")
    raw_channels = data.get("channels")
    if raw_channels is None:
        return {}
    if not isinstance(raw_channels, dict):
        raise CorruptStateError(f"State file {path} has a non-object 'channels' field")

    channels: dict[str, ChannelInfo] = {}
    for channel_id, raw in raw_channels.items():
        if not isinstance(raw, dict):
            raise CorruptStateError(f"Channel {channel_id!r} in {path} is not an object")
        try:
            info = ChannelInfo.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptStateError(f"Channel {channel_id!r} in {path} is malformed: {exc}") from exc
        channels[channel_id] = info
    return channels
