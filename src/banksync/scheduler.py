"""
Periodic sync scheduler.

Runs a sync on a fixed interval and when the app comes to the foreground,
with bounded exponential-backoff retries after failures.

States: STOPPED -> RUNNING (interval armed) -> SYNCING (one run in flight)
-> RUNNING. Only one sync runs at a time; a trigger that arrives while
SYNCING is dropped, not queued.

Time is injected through a :class:`Timer` so the state machine can be driven
in tests without waiting on the wall clock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from banksync.config import SyncSettings

logger = logging.getLogger("banksync.scheduler")


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    SYNCING = "syncing"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timer(Protocol):
    """Schedules coroutine callbacks after a delay in seconds."""

    def schedule(self, delay: float, callback: Callable[[], Awaitable[Any]]) -> TimerHandle: ...

    def now(self) -> float: ...


class AsyncioTimer:
    """:class:`Timer` backed by ``loop.call_later``.

    Cancelling a handle stops a callback that hasn't fired yet; a callback
    that is already running is left alone.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def schedule(self, delay: float, callback: Callable[[], Awaitable[Any]]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, self._spawn, callback)

    def _spawn(self, callback: Callable[[], Awaitable[Any]]) -> None:
        task = asyncio.ensure_future(callback())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class PeriodicSyncScheduler:
    """Drives ``sync`` on an interval, on foreground events, and on retry.

    Usage::

        scheduler = PeriodicSyncScheduler(orchestrator.sync_all, config.sync)
        await scheduler.start()          # immediate sync, then every 15 min
        await scheduler.on_app_state_change("active")
        scheduler.stop()
    """

    def __init__(
        self,
        sync: Callable[[], Awaitable[Any]],
        settings: SyncSettings | None = None,
        *,
        timer: Timer | None = None,
    ) -> None:
        self._sync = sync
        self.settings = settings or SyncSettings()
        self.timer: Timer = timer or AsyncioTimer()
        self.retry_count = 0
        self._running = False
        self._syncing = False
        self._interval_handle: TimerHandle | None = None
        self._retry_handle: TimerHandle | None = None
        self._retry_due: float | None = None
        self.last_success: datetime | None = None
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        if self._syncing:
            return SchedulerState.SYNCING
        if self._running:
            return SchedulerState.RUNNING
        return SchedulerState.STOPPED

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def interval_seconds(self) -> float:
        return self.settings.interval_minutes * 60

    def next_retry_in(self) -> float | None:
        """Seconds until the pending retry fires, or None."""
        if self._retry_due is None:
            return None
        return max(0.0, self._retry_due - self.timer.now())

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "is_running": self._running,
            "is_syncing": self._syncing,
            "retry_count": self.retry_count,
            "next_retry_in": self.next_retry_in(),
            "last_success": self.last_success,
            "last_error": self.last_error,
        }

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Sync immediately, then arm the interval timer. No-op if already running."""
        if self._running:
            logger.info("Periodic sync already running")
            return

        self._running = True
        logger.info("Starting periodic sync every %s minute(s)", self.settings.interval_minutes)
        await self.sync_now(trigger="start")
        # stop() may have been called while the first sync was in flight
        if self._running:
            self._arm_interval()

    def stop(self) -> None:
        """Cancel pending timers. A sync already in flight runs to completion."""
        self._running = False
        self._cancel_interval()
        self._cancel_retry()
        logger.info("Periodic sync stopped")

    def update_config(self, **changes: Any) -> None:
        """Change settings; re-arms the interval timer if it changed while running."""
        interval_changed = "interval_minutes" in changes and changes["interval_minutes"] != self.settings.interval_minutes
        self.settings = self.settings.model_copy(update=changes)
        logger.info("Sync config updated: %s", changes)
        if interval_changed and self._running:
            self._cancel_interval()
            self._arm_interval()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def on_app_state_change(self, app_state: str) -> bool:
        """React to app lifecycle changes ("active", "background", ...).

        Returns True only if a sync ran and succeeded.
        """
        if app_state == "active" and self.settings.sync_on_foreground:
            logger.info("App became active, triggering sync...")
            return await self.sync_now(trigger="foreground")
        if app_state == "background" and self.settings.sync_on_background:
            logger.info("App went to background, triggering sync...")
            return await self.sync_now(trigger="background")
        return False

    async def manual_sync(self, on_complete: Callable[[bool], Any] | None = None) -> bool:
        success = await self.sync_now(trigger="manual")
        if on_complete is not None:
            on_complete(success)
        return success

    async def sync_now(self, trigger: str = "manual") -> bool:
        """Run one sync unless one is already in flight.

        Returns True on success, False if it failed or was skipped. Failures
        are logged and retried with backoff, never raised.
        """
        if self._syncing:
            logger.info("Sync already in progress, skipping %s trigger", trigger)
            return False

        self._syncing = True
        try:
            logger.info("Starting data sync (%s)...", trigger)
            await self._sync()
        except Exception as e:
            self.last_error = str(e)
            logger.error("Data sync failed: %s", e)
            self._handle_failure()
            return False
        finally:
            self._syncing = False

        self.retry_count = 0
        self.last_error = None
        self.last_success = datetime.now()
        self._cancel_retry()
        logger.info("Data sync completed successfully")
        return True

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _handle_failure(self) -> None:
        self.retry_count += 1
        if self.retry_count < self.settings.max_retries:
            # Exponential backoff: 2^retry_count minutes
            delay = (2**self.retry_count) * 60
            logger.info(
                "Retrying sync in %d minute(s) (%d/%d)",
                delay // 60,
                self.retry_count,
                self.settings.max_retries,
            )
            self._schedule_retry(delay)
        else:
            logger.error("Max retries reached, waiting for the next interval")
            self.retry_count = 0

    def _schedule_retry(self, delay: float) -> None:
        self._cancel_retry()
        self._retry_due = self.timer.now() + delay
        self._retry_handle = self.timer.schedule(delay, self._on_retry)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
        self._retry_handle = None
        self._retry_due = None

    async def _on_retry(self) -> None:
        self._retry_handle = None
        self._retry_due = None
        await self.sync_now(trigger="retry")

    def _arm_interval(self) -> None:
        self._interval_handle = self.timer.schedule(self.interval_seconds, self._on_interval)

    def _cancel_interval(self) -> None:
        if self._interval_handle is not None:
            self._interval_handle.cancel()
        self._interval_handle = None

    async def _on_interval(self) -> None:
        if not self._running:
            return
        self._arm_interval()
        await self.sync_now(trigger="interval")
