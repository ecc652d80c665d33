from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

from dotenv import load_dotenv


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class Config:
    credentials_file: Path
    webhook_url: str
    watch_file_id: str
    webhook_host: str
    webhook_port: int
    webhook_path: str
    state_file: Path
    channel_max_duration_sec: int
    renew_interval_sec: int
    renew_threshold_sec: int
    http_timeout_sec: int
    drive_api_base_url: str
    telegram_bot_token: str
    telegram_chat_id: int | None
    telegram_api_base_url: str

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token)


def _lookup(name: str, overrides: Mapping[str, Any]) -> str | None:
    value = overrides.get(name)
    if value is not None:
        return str(value)
    return os.getenv(name)


def _get_required(name: str, overrides: Mapping[str, Any]) -> str:
    value = (_lookup(name, overrides) or "").strip()
    if not value:
        raise ConfigError(f"Missing required setting: {name}")
    return value


def _get_str(name: str, default: str, overrides: Mapping[str, Any]) -> str:
    return (_lookup(name, overrides) or "").strip() or default


def _get_int(name: str, default: int, overrides: Mapping[str, Any]) -> int:
    raw = (_lookup(name, overrides) or str(default)).strip()
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be > 0, got: {value}")
    return value


def _resolve_path(raw_value: str, base_dir: Path) -> Path:
    path = Path(raw_value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path.resolve()


def load_config(env_file: str | None = ".env", overrides: Mapping[str, Any] | None = None) -> Config:
    """Build the Config from CLI overrides, the environment and the env file.

    Overrides are keyed by environment variable name and win over both other
    sources. Relative paths resolve against the env file's directory.
    """
    overrides = {key: value for key, value in (overrides or {}).items() if value is not None}
    if env_file:
        load_dotenv(env_file)
        env_dir = Path(env_file).expanduser().resolve().parent
    else:
        load_dotenv()
        env_dir = Path.cwd()

    credentials_file = _resolve_path(_get_required("DRIVE_CREDENTIALS_FILE", overrides), env_dir)
    webhook_url = _get_required("DRIVE_WEBHOOK_URL", overrides)
    parsed_url = urlparse(webhook_url)
    if parsed_url.scheme not in {"http", "https"} or not parsed_url.netloc:
        raise ConfigError(f"DRIVE_WEBHOOK_URL must be an http(s) URL, got: {webhook_url!r}")

    webhook_path = _get_str("WEBHOOK_PATH", "/drive-webhook", overrides)
    if not webhook_path.startswith("/"):
        raise ConfigError(f"WEBHOOK_PATH must start with '/', got: {webhook_path!r}")

    channel_max_duration_sec = _get_int("CHANNEL_MAX_DURATION_SEC", 24 * 60 * 60, overrides)
    renew_interval_sec = _get_int("RENEW_INTERVAL_SEC", 20 * 60 * 60, overrides)
    renew_threshold_sec = _get_int("RENEW_THRESHOLD_SEC", 4 * 60 * 60, overrides)
    if renew_interval_sec >= channel_max_duration_sec:
        raise ConfigError(
            "RENEW_INTERVAL_SEC must be less than CHANNEL_MAX_DURATION_SEC "
            f"({renew_interval_sec} >= {channel_max_duration_sec})"
        )
    if renew_threshold_sec >= channel_max_duration_sec:
        raise ConfigError(
            "RENEW_THRESHOLD_SEC must be less than CHANNEL_MAX_DURATION_SEC "
            f"({renew_threshold_sec} >= {channel_max_duration_sec})"
        )

    telegram_bot_token = _get_str("TELEGRAM_BOT_TOKEN", "", overrides)
    telegram_chat_id: int | None = None
    chat_id_raw = _get_str("TELEGRAM_CHAT_ID", "", overrides)
    if chat_id_raw:
        try:
            telegram_chat_id = int(chat_id_raw)
        except ValueError as exc:
            raise ConfigError(f"TELEGRAM_CHAT_ID must be an integer, got: {chat_id_raw!r}") from exc
    if telegram_bot_token and telegram_chat_id is None:
        raise ConfigError("TELEGRAM_CHAT_ID is required when TELEGRAM_BOT_TOKEN is set")

    return Config(
        credentials_file=credentials_file,
        webhook_url=webhook_url,
        watch_file_id=_get_required("DRIVE_WATCH_FILE_ID", overrides),
        webhook_host=_get_str("WEBHOOK_HOST", "0.0.0.0", overrides),
        webhook_port=_get_int("WEBHOOK_PORT", 8080, overrides),
        webhook_path=webhook_path,
        state_file=_resolve_path(_get_str("STATE_FILE", "./.drive-channels.json", overrides), env_dir),
        channel_max_duration_sec=channel_max_duration_sec,
        renew_interval_sec=renew_interval_sec,
        renew_threshold_sec=renew_threshold_sec,
        http_timeout_sec=_get_int("HTTP_TIMEOUT_SEC", 20, overrides),
        drive_api_base_url=_get_str("DRIVE_API_BASE_URL", "https://www.googleapis.com/drive/v3", overrides),
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
        telegram_api_base_url=_get_str("TELEGRAM_API_BASE_URL", "https://api.telegram.org", overrides),
    )


def resolve_state_file(env_file: str | None = ".env", override: str | None = None) -> Path:
    """State file location without requiring the watcher's other settings."""
    if env_file:
        load_dotenv(env_file)
        env_dir = Path(env_file).expanduser().resolve().parent
    else:
        load_dotenv()
        env_dir = Path.cwd()
    raw = override or os.getenv("STATE_FILE", "").strip() or "./.drive-channels.json"
    return _resolve_path(raw, env_dir)
