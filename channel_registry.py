from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable

from channel_store import ChannelStore, CorruptStateError
from models import ChannelInfo


LOG = logging.getLogger("drivewatch")


class ChannelRegistry:
    def __init__(self, store: ChannelStore | None = None):
        self.store = store
        self._lock = threading.Lock()
        self._channels: dict[str, ChannelInfo] = {}

    def _persist_locked(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self._channels)
        except OSError:
            LOG.exception("Failed to save channel state")

    def load(self) -> int:
        if self.store is None:
            return 0
        try:
            channels = self.store.load()
        except CorruptStateError as exc:
            LOG.warning("Failed to load previous state, starting empty: %s", exc)
            moved_to = self.store.quarantine()
            if moved_to is not None:
                LOG.warning("Unreadable state kept at %s for manual channel cleanup", moved_to)
            channels = {}
        with self._lock:
            self._channels = dict(channels)
            return len(self._channels)

    def get(self, channel_id: str) -> ChannelInfo | None:
        with self._lock:
            return self._channels.get(channel_id)

    def put(self, info: ChannelInfo) -> None:
        with self._lock:
            self._channels[info.id] = info
            self._persist_locked()

    def delete(self, channel_id: str) -> bool:
        return bool(self.delete_many([channel_id]))

    def delete_many(self, channel_ids: Iterable[str]) -> list[ChannelInfo]:
        with self._lock:
            removed = [
                self._channels.pop(channel_id)
                for channel_id in list(channel_ids)
                if channel_id in self._channels
            ]
            if removed:
                self._persist_locked()
            return removed

    def remove_where(self, predicate: Callable[[ChannelInfo], bool]) -> list[ChannelInfo]:
        with self._lock:
            removed = [info for info in self._channels.values() if predicate(info)]
            for info in removed:
                del self._channels[info.id]
            if removed:
                self._persist_locked()
            return removed

    def list_all(self) -> list[ChannelInfo]:
        with self._lock:
            return list(self._channels.values())

    def list_where(self, predicate: Callable[[ChannelInfo], bool]) -> list[ChannelInfo]:
        with self._lock:
            return [info for info in self._channels.values() if predicate(info)]

    def snapshot(self) -> dict[str, ChannelInfo]:
        with self._lock:
            return dict(self._channels)

    def __contains__(self, channel_id: object) -> bool:
        with self._lock:
            return channel_id in self._channels

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)
