from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Callable

from lifecycle import ChannelLifecycle, SubscriptionFailedError
from models import ChannelInfo


LOG = logging.getLogger("drivewatch")
DEFAULT_RENEW_INTERVAL_SEC = 20 * 60 * 60
DEFAULT_RENEW_THRESHOLD_SEC = 4 * 60 * 60


class PeriodicScheduler:
    def __init__(
        self,
        interval_sec: float,
        monotonic: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        if interval_sec <= 0:
            raise ValueError("interval_sec must be > 0")
        self.interval_sec = interval_sec
        self._monotonic = monotonic or time.monotonic
        self._sleep = sleep or time.sleep

    def run(self, stop_event, job: Callable[[], None], run_immediately: bool = False) -> None:
        next_run = self._monotonic()
        if not run_immediately:
            next_run += self.interval_sec
        while not stop_event.is_set():
            now = self._monotonic()
            if now >= next_run:
                job()
                next_run += self.interval_sec
                if now > next_run:
                    behind = now - next_run
                    skipped = int(behind // self.interval_sec) + 1
                    next_run += skipped * self.interval_sec
                continue

            sleep_for = min(0.25, max(0.0, next_run - now))
            self._sleep(sleep_for)


class ChannelRenewer:
    """Replaces channels that are about to lapse with fresh ones."""

    def __init__(
        self,
        lifecycle: ChannelLifecycle,
        interval_sec: float = DEFAULT_RENEW_INTERVAL_SEC,
        threshold_sec: float = DEFAULT_RENEW_THRESHOLD_SEC,
        scheduler: PeriodicScheduler | None = None,
    ):
        if threshold_sec <= 0:
            raise ValueError("threshold_sec must be > 0")
        self.lifecycle = lifecycle
        self.threshold = timedelta(seconds=threshold_sec)
        self.scheduler = scheduler or PeriodicScheduler(interval_sec)
        self.lookahead = timedelta(seconds=self.scheduler.interval_sec)

    def due_channels(self) -> list[ChannelInfo]:
        # A channel left alone now is next seen one interval later; renew it
        # if it would be under the threshold (or gone) by then.
        now = self.lifecycle.clock()
        return self.lifecycle.registry.list_where(
            lambda info: info.time_to_expiry(now) < self.threshold + self.lookahead
        )

    def tick(self) -> list[tuple[str, str | None]]:
        results: list[tuple[str, str | None]] = []
        for info in self.due_channels():
            LOG.info("Renewing channel %s (expires soon: %s)", info.id, info.expiration)
            try:
                renewed = self.lifecycle.renew(info.file_id, info.id)
            except SubscriptionFailedError as exc:
                LOG.error("Failed to renew channel %s: %s", info.id, exc)
                results.append((info.id, None))
                continue
            LOG.info("Channel renewed: %s -> %s", info.id, renewed.id)
            results.append((info.id, renewed.id))
        return results

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            LOG.exception("Unhandled exception in channel renewal job")

    def run(self, stop_event) -> None:
        self.scheduler.run(stop_event=stop_event, job=self._safe_tick)
