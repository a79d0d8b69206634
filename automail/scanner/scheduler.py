"""Scan scheduler: decides on a fixed heartbeat whether a scan should fire.

Modes:
  - disabled: never fires automatically
  - interval: fires when ``interval_minutes`` have elapsed since the last scan
  - fixed: fires once inside a short window after each daily target hour

Scans are never reentrant. The scheduler is either IDLE or SCANNING and
refuses to start a scan (automatic or manual) while one is outstanding.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import StrEnum

from automail.schemas.registry import ScanConfiguration, ScanMode

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 10.0
FIXED_HOURS = (8, 12, 16)
FIXED_WINDOW = timedelta(minutes=5)
MIN_AUTO_SPACING = timedelta(minutes=1)


def local_now() -> datetime:
    """Timezone-aware wall-clock time; fixed hours are local hours."""
    return datetime.now().astimezone()


class SchedulerState(StrEnum):
    IDLE = "idle"
    SCANNING = "scanning"


class ScanScheduler:
    """Heartbeat-driven trigger for automatic scans.

    Usage::

        scheduler = ScanScheduler(ScanConfiguration(mode=ScanMode.FIXED))
        await scheduler.run(engine_scan)
    """

    def __init__(
        self,
        config: ScanConfiguration,
        *,
        fixed_hours: tuple[int, ...] = FIXED_HOURS,
        window: timedelta = FIXED_WINDOW,
        min_spacing: timedelta = MIN_AUTO_SPACING,
    ) -> None:
        self.config = config
        self.fixed_hours = tuple(sorted(fixed_hours))
        self.window = window
        self.min_spacing = min_spacing
        self.state = SchedulerState.IDLE
        self.last_scan_at: datetime | None = None
        self.last_auto_scan_at: datetime | None = None

    @property
    def busy(self) -> bool:
        return self.state == SchedulerState.SCANNING

    def record_scan(self, when: datetime) -> None:
        self.last_scan_at = when

    def should_fire(self, now: datetime) -> bool:
        """True if an automatic scan is due at ``now``."""
        if self.busy or self.config.mode == ScanMode.DISABLED:
            return False
        if self.last_auto_scan_at is not None and now - self.last_auto_scan_at < self.min_spacing:
            return False

        if self.config.mode == ScanMode.INTERVAL:
            if self.last_scan_at is None:
                return True
            elapsed = now - self.last_scan_at
            return elapsed >= timedelta(minutes=self.config.interval_minutes)

        if self.config.mode == ScanMode.FIXED:
            if now.hour not in self.fixed_hours:
                return False
            window_start = now.replace(minute=0, second=0, microsecond=0)
            if not window_start <= now < window_start + self.window:
                return False
            last = self.last_scan_at
            # Once per target hour per day.
            return last is None or last.hour != now.hour or last.date() != now.date()

        return False

    def next_scan_time(self, now: datetime) -> datetime | None:
        """When the next automatic scan is expected, for display."""
        if self.config.mode == ScanMode.INTERVAL:
            if self.last_scan_at is None:
                return None
            return self.last_scan_at + timedelta(minutes=self.config.interval_minutes)

        if self.config.mode == ScanMode.FIXED:
            for hour in self.fixed_hours:
                if hour > now.hour or (hour == now.hour and now.minute == 0):
                    return now.replace(hour=hour, minute=0, second=0, microsecond=0)
            tomorrow = now + timedelta(days=1)
            return tomorrow.replace(hour=self.fixed_hours[0], minute=0, second=0, microsecond=0)

        return None

    async def _run_scan(self, scan: Callable[[], Awaitable[object]], now: datetime) -> None:
        self.state = SchedulerState.SCANNING
        try:
            await scan()
        finally:
            self.state = SchedulerState.IDLE
            self.record_scan(now)

    async def tick(self, now: datetime, scan: Callable[[], Awaitable[object]]) -> bool:
        """Fire ``scan`` if due. Returns True if a scan ran."""
        if not self.should_fire(now):
            return False
        self.last_auto_scan_at = now
        logger.info("Automatic scan (%s mode)", self.config.mode.value)
        await self._run_scan(scan, now)
        return True

    async def run_manual(self, scan: Callable[[], Awaitable[object]], now: datetime) -> bool:
        """Run an operator-requested scan unless one is already in flight."""
        if self.busy:
            logger.info("Scan already in progress, ignoring manual request")
            return False
        await self._run_scan(scan, now)
        return True

    async def run(
        self,
        scan: Callable[[], Awaitable[object]],
        *,
        heartbeat: float = HEARTBEAT_SECONDS,
        stop: asyncio.Event | None = None,
        wake: asyncio.Event | None = None,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        """Heartbeat loop. ``wake`` requests an early manual scan."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                if wake is not None and wake.is_set():
                    wake.clear()
                    await self.run_manual(scan, clock())
                else:
                    await self.tick(clock(), scan)
            except Exception:
                logger.exception("Scan failed, retrying on a later heartbeat")

            waiters = [asyncio.ensure_future(stop.wait())]
            if wake is not None:
                waiters.append(asyncio.ensure_future(wake.wait()))
            _done, pending = await asyncio.wait(
                waiters, timeout=heartbeat, return_when=asyncio.FIRST_COMPLETED
            )
            for waiter in pending:
                waiter.cancel()
