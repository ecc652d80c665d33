from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from channel_registry import ChannelRegistry
from channel_store import ChannelStore
from models import ChannelInfo

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class RecordingStore:
    def __init__(self, fail: bool = False):
        self.saves: list[dict] = []
        self.fail = fail

    def save(self, channels):
        if self.fail:
            raise OSError("disk full")
        self.saves.append(dict(channels))


def _info(channel_id: str, file_id: str = "doc1", hours: float = 24) -> ChannelInfo:
    return ChannelInfo(
        id=channel_id,
        resource_id=f"res-{channel_id}",
        file_id=file_id,
        expiration=BASE_TIME + timedelta(hours=hours),
    )


def test_put_get_and_list():
    registry = ChannelRegistry()
    a = _info("a", "doc1")
    b = _info("b", "doc2")

    registry.put(a)
    registry.put(b)

    assert registry.get("a") == a
    assert registry.get("missing") is None
    assert "b" in registry
    assert len(registry) == 2
    assert {info.id for info in registry.list_all()} == {"a", "b"}
    assert registry.list_where(lambda info: info.file_id == "doc2") == [b]


def test_mutations_persist_full_snapshot():
    store = RecordingStore()
    registry = ChannelRegistry(store)

    registry.put(_info("a"))
    registry.put(_info("b"))
    registry.delete("a")

    assert [set(snapshot) for snapshot in store.saves] == [{"a"}, {"a", "b"}, {"b"}]


def test_noop_mutations_do_not_touch_store():
    store = RecordingStore()
    registry = ChannelRegistry(store)
    registry.put(_info("a"))

    assert registry.delete("missing") is False
    assert registry.delete_many(["x", "y"]) == []
    assert registry.remove_where(lambda info: info.file_id == "nope") == []

    assert len(store.saves) == 1


def test_remove_where_returns_removed_entries():
    store = RecordingStore()
    registry = ChannelRegistry(store)
    registry.put(_info("old", hours=-1))
    registry.put(_info("new", hours=5))

    removed = registry.remove_where(lambda info: info.is_expired(BASE_TIME))

    assert [info.id for info in removed] == ["old"]
    assert set(store.saves[-1]) == {"new"}


def test_save_failure_is_logged_and_memory_stays_ahead(caplog):
    registry = ChannelRegistry(RecordingStore(fail=True))

    registry.put(_info("a"))

    assert registry.get("a") is not None
    failures = [record for record in caplog.records if "Failed to save channel state" in record.getMessage()]
    assert len(failures) == 1
    assert failures[0].levelno == logging.ERROR
    assert failures[0].exc_info is not None


def test_load_replaces_content_from_store(tmp_path: Path):
    store = ChannelStore(tmp_path / "channels.json")
    store.save({"a": _info("a"), "b": _info("b")})
    registry = ChannelRegistry(store)
    registry.put(_info("stale"))

    assert registry.load() == 2
    assert {info.id for info in registry.list_all()} == {"a", "b"}


def test_load_corrupt_state_starts_empty_and_keeps_copy(tmp_path: Path, caplog):
    path = tmp_path / "channels.json"
    path.write_text("{broken", encoding="utf-8")
    registry = ChannelRegistry(ChannelStore(path))

    assert registry.load() == 0

    assert len(registry) == 0
    assert not path.exists()
    assert (tmp_path / "channels.json.corrupt").read_text(encoding="utf-8") == "{broken"
    assert "Failed to load previous state" in caplog.text


def test_concurrent_puts_leave_store_matching_memory(tmp_path: Path):
    store = ChannelStore(tmp_path / "channels.json")
    registry = ChannelRegistry(store)

    def _worker(prefix: str):
        for index in range(20):
            registry.put(_info(f"{prefix}-{index}"))
            if index % 3 == 0:
                registry.delete(f"{prefix}-{index}")

    threads = [threading.Thread(target=_worker, args=(f"t{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.load() == registry.snapshot()
    assert len(registry) == 4 * 13
