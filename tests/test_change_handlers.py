from __future__ import annotations

import pytest
import requests

from change_handlers import LoggingChangeHandler, TelegramApiError, TelegramChangeNotifier, chain_handlers


class FakeResponse:
    def __init__(self, payload, status_code: int = 200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response: FakeResponse | None = None, error: Exception | None = None):
        self.response = response or FakeResponse({"ok": True, "result": {}})
        self.error = error
        self.posts: list[dict] = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def _notifier(session: FakeSession) -> TelegramChangeNotifier:
    return TelegramChangeNotifier(
        token="TOKEN",
        chat_id=42,
        watched_file_id="sheet-1",
        timeout_sec=5,
        session=session,
    )


def test_telegram_notifier_sends_one_message_per_change():
    session = FakeSession()

    _notifier(session)("chan-1", "res-1", "change", "9")

    post = session.posts[0]
    assert post["url"] == "https://api.telegram.org/botTOKEN/sendMessage"
    assert post["json"]["chat_id"] == 42
    assert "sheet-1" in post["json"]["text"]
    assert "change (message #9)" in post["json"]["text"]
    assert post["timeout"] == 5


def test_telegram_non_ok_response_raises():
    session = FakeSession(FakeResponse({"ok": False, "description": "chat not found"}))

    with pytest.raises(TelegramApiError):
        _notifier(session)("chan-1", "res-1", "update", "3")


@pytest.mark.parametrize(
    "session",
    [
        FakeSession(error=requests.ConnectionError("offline")),
        FakeSession(FakeResponse({"ok": True}, status_code=502)),
    ],
)
def test_telegram_transport_errors_raise(session):
    with pytest.raises(TelegramApiError):
        _notifier(session).send_message("hello")


def test_logging_handler_logs_change(caplog):
    caplog.set_level("INFO", logger="drivewatch")

    LoggingChangeHandler()("chan-1", "res-1", "change", "4")

    assert "Processing file change: channel=chan-1 resource=res-1 state=change msg#=4" in caplog.text


def test_chain_handlers_calls_each_in_order():
    calls = []
    chained = chain_handlers(
        [
            lambda *args: calls.append(("first",) + args),
            lambda *args: calls.append(("second",) + args),
        ]
    )

    chained("chan-1", "res-1", "change", "1")

    assert calls == [
        ("first", "chan-1", "res-1", "change", "1"),
        ("second", "chan-1", "res-1", "change", "1"),
    ]
