from __future__ import annotations

import logging
from typing import Callable, Iterable, Protocol

import requests


LOG = logging.getLogger("drivewatch")


class TelegramApiError(Exception):
    pass


class ChangeHandler(Protocol):
    def __call__(
        self,
        channel_id: str,
        resource_id: str,
        resource_state: str,
        message_number: str,
    ) -> None: ...


class LoggingChangeHandler:
    def __call__(self, channel_id: str, resource_id: str, resource_state: str, message_number: str) -> None:
        LOG.info(
            "Processing file change: channel=%s resource=%s state=%s msg#=%s",
            channel_id,
            resource_id,
            resource_state,
            message_number,
        )


class TelegramChangeNotifier:
    """Relays one short Telegram message per detected change."""

    def __init__(
        self,
        token: str,
        chat_id: int,
        watched_file_id: str,
        timeout_sec: int = 20,
        api_base_url: str = "https://api.telegram.org",
        session: requests.Session | None = None,
    ):
        self.token = token
        self.chat_id = chat_id
        self.watched_file_id = watched_file_id
        self.timeout_sec = timeout_sec
        self.api_base_url = api_base_url.rstrip("/")
        self.session = session or requests.Session()

    @property
    def _base(self) -> str:
        return f"{self.api_base_url}/bot{self.token}"

    def send_message(self, text: str) -> None:
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        try:
            response = self.session.post(
                f"{self._base}/sendMessage",
                json=payload,
                timeout=self.timeout_sec,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TelegramApiError(f"Failed to send message: {exc}") from exc
        if not data.get("ok"):
            raise TelegramApiError(f"Telegram returned non-ok sendMessage response: {data}")

    def __call__(self, channel_id: str, resource_id: str, resource_state: str, message_number: str) -> None:
        self.send_message(
            "Google Drive file changed.\n"
            f"File: https://docs.google.com/spreadsheets/d/{self.watched_file_id}\n"
            f"State: {resource_state} (message #{message_number})"
        )


def chain_handlers(handlers: Iterable[ChangeHandler]) -> Callable[[str, str, str, str], None]:
    chained = list(handlers)

    def _handle(channel_id: str, resource_id: str, resource_state: str, message_number: str) -> None:
        for handler in chained:
            handler(channel_id, resource_id, resource_state, message_number)

    return _handle
