from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from datetime import timedelta
from http.server import ThreadingHTTPServer
from pathlib import Path
from typing import Callable

from change_handlers import LoggingChangeHandler, TelegramChangeNotifier, chain_handlers
from channel_registry import ChannelRegistry
from channel_store import ChannelStore, CorruptStateError
from config import Config, ConfigError, load_config, resolve_state_file
from drive_client import DriveClient, load_service_account_session
from lifecycle import ChannelLifecycle, SubscriptionFailedError
from scheduler import ChannelRenewer
from webhook import ChangeTaskQueue, NotificationDispatcher, make_webhook_server, start_in_thread

LOG = logging.getLogger("drivewatch")
EXIT_SUBSCRIPTION_FAILED = 1
THREAD_JOIN_TIMEOUT_SEC = 5.0


@dataclass
class Watcher:
    config: Config
    registry: ChannelRegistry
    lifecycle: ChannelLifecycle
    renewer: ChannelRenewer
    task_queue: ChangeTaskQueue
    dispatcher: NotificationDispatcher


def build_drive_client(config: Config) -> DriveClient:
    try:
        session = load_service_account_session(config.credentials_file)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Unable to load credentials file {config.credentials_file}: {exc}") from exc
    return DriveClient(
        session=session,
        api_base_url=config.drive_api_base_url,
        timeout_sec=config.http_timeout_sec,
    )


def build_change_handler(config: Config) -> Callable[[str, str, str, str], None]:
    handlers = [LoggingChangeHandler()]
    if config.telegram_enabled and config.telegram_chat_id is not None:
        handlers.append(
            TelegramChangeNotifier(
                token=config.telegram_bot_token,
                chat_id=config.telegram_chat_id,
                watched_file_id=config.watch_file_id,
                timeout_sec=config.http_timeout_sec,
                api_base_url=config.telegram_api_base_url,
            )
        )
    return chain_handlers(handlers)


def build_watcher(
    config: Config,
    drive_client: DriveClient,
    change_handler: Callable[[str, str, str, str], None] | None = None,
) -> Watcher:
    registry = ChannelRegistry(ChannelStore(config.state_file))
    lifecycle = ChannelLifecycle(
        registry=registry,
        drive_client=drive_client,
        webhook_url=config.webhook_url,
        max_channel_duration=timedelta(seconds=config.channel_max_duration_sec),
    )
    renewer = ChannelRenewer(
        lifecycle,
        interval_sec=config.renew_interval_sec,
        threshold_sec=config.renew_threshold_sec,
    )
    task_queue = ChangeTaskQueue()
    dispatcher = NotificationDispatcher(
        registry=registry,
        change_handler=change_handler or build_change_handler(config),
        task_queue=task_queue,
    )
    return Watcher(
        config=config,
        registry=registry,
        lifecycle=lifecycle,
        renewer=renewer,
        task_queue=task_queue,
        dispatcher=dispatcher,
    )


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _stop_handler(signum, _frame):
        LOG.info("Received signal %s, shutting down gracefully...", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop_handler)
    signal.signal(signal.SIGTERM, _stop_handler)


def _shutdown(
    watcher: Watcher,
    server: ThreadingHTTPServer,
    threads: list[threading.Thread],
    renewer_thread: threading.Thread,
) -> None:
    server.shutdown()
    server.server_close()
    for thread in threads:
        thread.join(timeout=THREAD_JOIN_TIMEOUT_SEC)
    # An in-flight renewal may still register a channel; stop_all must see it.
    renewer_thread.join()
    watcher.lifecycle.stop_all()


def run_watcher(
    watcher: Watcher,
    stop_event: threading.Event | None = None,
    install_signal_handlers: bool = True,
    on_ready: Callable[[ThreadingHTTPServer], None] | None = None,
) -> int:
    config = watcher.config
    stop_event = stop_event or threading.Event()
    if install_signal_handlers:
        _install_signal_handlers(stop_event)

    loaded = watcher.registry.load()
    if loaded:
        LOG.info("Loaded %d channel(s) from previous state", loaded)

    server = make_webhook_server(
        watcher.dispatcher,
        host=config.webhook_host,
        port=config.webhook_port,
        path=config.webhook_path,
    )
    server_thread = start_in_thread(server)
    LOG.info("Webhook server listening on %s:%d%s", config.webhook_host, server.server_port, config.webhook_path)

    try:
        watcher.lifecycle.watch(config.watch_file_id)
    except SubscriptionFailedError as exc:
        LOG.error("Initial watch failed: %s", exc)
        server.shutdown()
        server.server_close()
        return EXIT_SUBSCRIPTION_FAILED
    LOG.info("Watching file: %s", config.watch_file_id)

    task_thread = threading.Thread(
        target=watcher.task_queue.run_forever,
        kwargs={"stop_event": stop_event},
        daemon=True,
        name="change-worker",
    )
    renewer_thread = threading.Thread(
        target=watcher.renewer.run,
        kwargs={"stop_event": stop_event},
        daemon=True,
        name="channel-renewer",
    )
    task_thread.start()
    renewer_thread.start()
    if on_ready is not None:
        on_ready(server)
    LOG.info("Press Ctrl+C to stop")

    try:
        while not stop_event.wait(0.5):
            pass
    finally:
        stop_event.set()
        _shutdown(watcher, server, [server_thread, task_thread], renewer_thread)
    return 0


def show_local_status(state_file: Path) -> int:
    store = ChannelStore(state_file)
    try:
        channels = store.load()
    except CorruptStateError as exc:
        print(f"corrupt: {exc}")
        return 1
    document = {"channels": {channel_id: info.to_dict() for channel_id, info in channels.items()}}
    print(json.dumps(document, indent=2, sort_keys=True))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Keep a Google Drive watch channel alive and receive its push notifications",
        epilog=(
            "example: %(prog)s -creds ./credentials.json "
            "-webhook https://example.com/drive-webhook -sheet 1W0w...mWXE"
        ),
    )
    parser.add_argument("-creds", help="JSON service-account credentials for the Drive API")
    parser.add_argument("-webhook", help="public webhook URL Drive delivers notifications to")
    parser.add_argument("-sheet", help="id of the Google Sheet (Drive file) to watch")
    parser.add_argument("-port", type=int, help="port for the local webhook server (default: 8080)")
    parser.add_argument("--env-file", default=".env", help="dotenv file with settings (default: .env)")
    parser.add_argument("--state-file", help="channel state file (default: ./.drive-channels.json)")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("daemon", help="Watch the file and serve the webhook (default)")
    subparsers.add_parser("status-local", help="Print persisted channel state JSON")
    return parser


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "daemon"

    if command == "status-local":
        raise SystemExit(show_local_status(resolve_state_file(args.env_file, args.state_file)))

    overrides = {
        "DRIVE_CREDENTIALS_FILE": args.creds,
        "DRIVE_WEBHOOK_URL": args.webhook,
        "DRIVE_WATCH_FILE_ID": args.sheet,
        "WEBHOOK_PORT": args.port,
        "STATE_FILE": args.state_file,
    }
    try:
        config = load_config(args.env_file, overrides)
        drive_client = build_drive_client(config)
    except ConfigError as exc:
        parser.print_usage(sys.stderr)
        raise SystemExit(f"Config error: {exc}")

    watcher = build_watcher(config, drive_client)
    raise SystemExit(run_watcher(watcher))


if __name__ == "__main__":
    main()
