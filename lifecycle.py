from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable

from channel_registry import ChannelRegistry
from drive_client import DriveApiError, DriveClient
from models import ChannelInfo, utc_now


LOG = logging.getLogger("drivewatch")
DEFAULT_MAX_CHANNEL_DURATION = timedelta(hours=24)


class ChannelNotFoundError(Exception):
    pass


class SubscriptionFailedError(Exception):
    pass


class RemoteStopFailedError(Exception):
    pass


class ChannelLifecycle:
    def __init__(
        self,
        registry: ChannelRegistry,
        drive_client: DriveClient,
        webhook_url: str,
        max_channel_duration: timedelta = DEFAULT_MAX_CHANNEL_DURATION,
        clock: Callable[[], datetime] | None = None,
    ):
        if max_channel_duration <= timedelta(0):
            raise ValueError("max_channel_duration must be > 0")
        self.registry = registry
        self.drive_client = drive_client
        self.webhook_url = webhook_url
        self.max_channel_duration = max_channel_duration
        self.clock = clock or utc_now

    def watch(self, file_id: str) -> ChannelInfo:
        self.cleanup_old_channels(file_id)
        self.cleanup_expired_channels()
        return self.create_watch(file_id)

    def cleanup_old_channels(self, file_id: str) -> list[ChannelInfo]:
        stale = self.registry.list_where(lambda info: info.file_id == file_id)
        if not stale:
            LOG.info("No old channels to clean up for file %s", file_id)
            return []

        for info in stale:
            LOG.info("Stopping old channel: %s (expires: %s)", info.id, info.expiration)
            try:
                self.drive_client.stop_channel(info.id, info.resource_id)
            except DriveApiError as exc:
                # The remote side lets the channel lapse at its expiration.
                LOG.warning("Failed to stop channel %s: %s", info.id, exc)

        removed = self.registry.delete_many(info.id for info in stale)
        LOG.info("Cleaned up %d old channel(s) for file %s", len(removed), file_id)
        return removed

    def cleanup_expired_channels(self) -> list[ChannelInfo]:
        now = self.clock()
        removed = self.registry.remove_where(lambda info: info.is_expired(now))
        for info in removed:
            LOG.info("Removed expired channel: %s (expired: %s)", info.id, info.expiration)
        return removed

    def create_watch(self, file_id: str) -> ChannelInfo:
        channel_id = str(uuid.uuid4())
        token = secrets.token_urlsafe(24)
        requested_expiration = self.clock() + self.max_channel_duration

        LOG.info("Creating watch for file %s with channel %s", file_id, channel_id)
        try:
            remote = self.drive_client.watch_file(
                file_id=file_id,
                channel_id=channel_id,
                address=self.webhook_url,
                token=token,
                expiration=requested_expiration,
            )
        except DriveApiError as exc:
            raise SubscriptionFailedError(f"Failed to watch file {file_id}: {exc}") from exc

        info = ChannelInfo(
            id=remote.id,
            resource_id=remote.resource_id,
            file_id=file_id,
            expiration=remote.expiration,
            token=token,
        )
        self.registry.put(info)
        LOG.info(
            "Watch created: channel=%s resource=%s expires=%s",
            info.id,
            info.resource_id,
            info.expiration,
        )
        return info

    def stop(self, channel_id: str) -> None:
        info = self.registry.get(channel_id)
        if info is None:
            raise ChannelNotFoundError(f"Channel {channel_id} not found")

        try:
            self.drive_client.stop_channel(info.id, info.resource_id)
        except DriveApiError as exc:
            raise RemoteStopFailedError(f"Failed to stop channel {channel_id}: {exc}") from exc

        self.registry.delete(channel_id)
        LOG.info("Channel %s stopped", channel_id)

    def renew(self, file_id: str, old_channel_id: str) -> ChannelInfo:
        try:
            self.stop(old_channel_id)
        except ChannelNotFoundError:
            LOG.info("Channel %s was already gone before renewal", old_channel_id)
        except RemoteStopFailedError as exc:
            LOG.warning("Failed to stop old channel, it will lapse on its own: %s", exc)
            self.registry.delete(old_channel_id)

        return self.create_watch(file_id)

    def stop_all(self) -> int:
        LOG.info("Stopping all active channels...")
        stopped = 0
        for info in self.registry.list_all():
            try:
                self.stop(info.id)
                stopped += 1
            except (ChannelNotFoundError, RemoteStopFailedError) as exc:
                LOG.warning("Failed to stop channel %s: %s", info.id, exc)
        LOG.info("Stopped %d channel(s)", stopped)
        return stopped
