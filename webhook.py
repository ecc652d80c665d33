from __future__ import annotations

import hmac
import logging
import queue
import threading
from dataclasses import dataclass
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Mapping
from urllib.parse import urlsplit

from channel_registry import ChannelRegistry


LOG = logging.getLogger("drivewatch")
DELIVERY_METHOD = "POST"
CHANGE_STATES = ("change", "update")


@dataclass(frozen=True)
class DriveNotification:
    channel_id: str
    resource_id: str
    resource_state: str
    resource_uri: str
    message_number: str
    channel_expiration: str
    channel_token: str

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "DriveNotification":
        def _header(name: str) -> str:
            return (headers.get(name) or "").strip()

        return cls(
            channel_id=_header("X-Goog-Channel-ID"),
            resource_id=_header("X-Goog-Resource-ID"),
            resource_state=_header("X-Goog-Resource-State"),
            resource_uri=_header("X-Goog-Resource-URI"),
            message_number=_header("X-Goog-Message-Number"),
            channel_expiration=_header("X-Goog-Channel-Expiration"),
            channel_token=_header("X-Goog-Channel-Token"),
        )


class ChangeTaskQueue:
    def __init__(self):
        self._queue: queue.Queue[tuple[str, Callable[..., Any], tuple]] = queue.Queue()

    def submit(self, name: str, task: Callable[..., Any], *args: Any) -> None:
        self._queue.put((name, task, args))

    def pending(self) -> int:
        return self._queue.qsize()

    def run_once(self, timeout: float = 0.25) -> bool:
        try:
            name, task, args = self._queue.get(timeout=timeout)
        except queue.Empty:
            return False
        try:
            task(*args)
        except Exception:
            LOG.exception("Unhandled exception in change task (%s)", name)
        finally:
            self._queue.task_done()
        return True

    def run_forever(self, stop_event) -> None:
        while not stop_event.is_set():
            self.run_once()

    def join(self) -> None:
        self._queue.join()


class NotificationDispatcher:
    def __init__(
        self,
        registry: ChannelRegistry,
        change_handler: Callable[[str, str, str, str], None],
        task_queue: ChangeTaskQueue,
    ):
        self.registry = registry
        self.change_handler = change_handler
        self.task_queue = task_queue

    def _is_ours(self, notification: DriveNotification) -> bool:
        info = self.registry.get(notification.channel_id)
        if info is None:
            return False
        if info.token and not hmac.compare_digest(info.token, notification.channel_token):
            LOG.warning("Token mismatch for channel %s, ignoring notification", notification.channel_id)
            return False
        return True

    def handle(self, method: str, headers: Mapping[str, str]) -> HTTPStatus:
        if method.upper() != DELIVERY_METHOD:
            return HTTPStatus.METHOD_NOT_ALLOWED

        notification = DriveNotification.from_headers(headers)
        if not self._is_ours(notification):
            LOG.info("Ignoring notification from unknown channel: %s", notification.channel_id)
            return HTTPStatus.OK

        LOG.info(
            "Received notification: channel=%s state=%s resource=%s msg#=%s",
            notification.channel_id,
            notification.resource_state,
            notification.resource_id,
            notification.message_number,
        )

        state = notification.resource_state
        if state == "sync":
            LOG.info("Channel %s synchronized", notification.channel_id)
        elif state in CHANGE_STATES:
            LOG.info("File %s: channel=%s resource=%s", state, notification.channel_id, notification.resource_id)
            self.task_queue.submit(
                f"{state}:{notification.channel_id}#{notification.message_number}",
                self.change_handler,
                notification.channel_id,
                notification.resource_id,
                notification.resource_state,
                notification.message_number,
            )
        else:
            LOG.warning("Unknown resource state: %s", state)

        return HTTPStatus.OK


def _make_handler(dispatcher: NotificationDispatcher, path: str):
    class Handler(BaseHTTPRequestHandler):
        def log_message(self, fmt, *args):
            LOG.debug("webhook %s - %s", self.address_string(), fmt % args)

        def _drain_body(self) -> None:
            content_length = int(self.headers.get("Content-Length") or "0")
            if content_length > 0:
                self.rfile.read(content_length)

        def _respond(self, status: HTTPStatus) -> None:
            self.send_response(status)
            self.send_header("Content-Length", "0")
            if status == HTTPStatus.METHOD_NOT_ALLOWED:
                self.send_header("Allow", DELIVERY_METHOD)
            self.end_headers()

        def _handle(self) -> None:
            if urlsplit(self.path).path != path:
                self._respond(HTTPStatus.NOT_FOUND)
                return
            try:
                self._drain_body()
                status = dispatcher.handle(self.command, self.headers)
            except Exception:
                LOG.exception("Unhandled exception in webhook handler")
                status = HTTPStatus.INTERNAL_SERVER_ERROR
            self._respond(status)

        do_POST = _handle  # noqa: N815
        do_GET = _handle  # noqa: N815
        do_PUT = _handle  # noqa: N815
        do_PATCH = _handle  # noqa: N815
        do_DELETE = _handle  # noqa: N815

    return Handler


def make_webhook_server(
    dispatcher: NotificationDispatcher,
    host: str = "0.0.0.0",
    port: int = 8080,
    path: str = "/drive-webhook",
) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, port), _make_handler(dispatcher, path))
    server.daemon_threads = True
    return server


def start_in_thread(server: ThreadingHTTPServer) -> threading.Thread:
    thread = threading.Thread(target=server.serve_forever, daemon=True, name="webhook-server")
    thread.start()
    return thread
