"""Tests for the periodic sync scheduler."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest

from banksync.config import SyncSettings
from banksync.errors import TransportError
from banksync.scheduler import AsyncioTimer, PeriodicSyncScheduler, SchedulerState


class FakeHandle:
    def __init__(self, due: float, callback: Callable[[], Awaitable[Any]]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimer:
    """Timer that only fires when the test advances it."""

    def __init__(self) -> None:
        self.current = 0.0
        self.handles: list[FakeHandle] = []

    def now(self) -> float:
        return self.current

    def schedule(self, delay: float, callback: Callable[[], Awaitable[Any]]) -> FakeHandle:
        handle = FakeHandle(self.current + delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[FakeHandle]:
        return [h for h in self.handles if not h.cancelled]

    def delays(self) -> list[float]:
        return sorted(h.due - self.current for h in self.pending)

    async def advance(self, seconds: float) -> None:
        target = self.current + seconds
        while True:
            due = [h for h in self.pending if h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.due)
            self.handles.remove(handle)
            self.current = handle.due
            await handle.callback()
        self.current = target


def _scheduler(sync: AsyncMock, **settings: Any) -> tuple[PeriodicSyncScheduler, FakeTimer]:
    timer = FakeTimer()
    return PeriodicSyncScheduler(sync, SyncSettings(**settings), timer=timer), timer


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start_syncs_immediately_and_arms_interval(self) -> None:
        sync = AsyncMock()
        scheduler, timer = _scheduler(sync)

        await scheduler.start()

        sync.assert_awaited_once()
        assert scheduler.state == SchedulerState.RUNNING
        assert timer.delays() == [15 * 60]

    @pytest.mark.asyncio
    async def test_interval_fires_repeatedly(self) -> None:
        sync = AsyncMock()
        scheduler, timer = _scheduler(sync, interval_minutes=1)

        await scheduler.start()
        await timer.advance(180)

        assert sync.await_count == 4

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self) -> None:
        sync = AsyncMock()
        scheduler, timer = _scheduler(sync)

        await scheduler.start()
        await scheduler.start()

        sync.assert_awaited_once()
        assert len(timer.pending) == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_timers(self) -> None:
        sync = AsyncMock()
        scheduler, timer = _scheduler(sync)

        await scheduler.start()
        scheduler.stop()
        await timer.advance(3600)

        assert scheduler.state == SchedulerState.STOPPED
        assert timer.pending == []
        sync.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_interval_rearms(self) -> None:
        scheduler, timer = _scheduler(AsyncMock())
        await scheduler.start()

        scheduler.update_config(interval_minutes=5)

        assert timer.delays() == [300]
        assert scheduler.settings.interval_minutes == 5


class TestTriggers:
    @pytest.mark.asyncio
    async def test_foreground_triggers_sync(self) -> None:
        sync = AsyncMock()
        scheduler, _ = _scheduler(sync)

        assert await scheduler.on_app_state_change("active") is True
        sync.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_background_ignored_by_default(self) -> None:
        sync = AsyncMock()
        scheduler, _ = _scheduler(sync)

        assert await scheduler.on_app_state_change("background") is False
        sync.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_background_sync_when_enabled(self) -> None:
        sync = AsyncMock()
        scheduler, _ = _scheduler(sync, sync_on_background=True, sync_on_foreground=False)

        assert await scheduler.on_app_state_change("background") is True
        assert await scheduler.on_app_state_change("active") is False
        sync.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_trigger_while_syncing_is_dropped(self) -> None:
        release = asyncio.Event()
        calls = 0

        async def slow_sync() -> None:
            nonlocal calls
            calls += 1
            await release.wait()

        scheduler, _ = _scheduler(AsyncMock(side_effect=slow_sync))
        first = asyncio.create_task(scheduler.manual_sync())
        await asyncio.sleep(0)
        assert scheduler.state == SchedulerState.SYNCING

        assert await scheduler.on_app_state_change("active") is False
        assert await scheduler.manual_sync() is False

        release.set()
        assert await first is True
        assert calls == 1
        assert not scheduler.is_syncing

    @pytest.mark.asyncio
    async def test_manual_sync_callback(self) -> None:
        scheduler, _ = _scheduler(AsyncMock(side_effect=TransportError("offline")))
        outcomes: list[bool] = []

        await scheduler.manual_sync(on_complete=outcomes.append)

        assert outcomes == [False]
        assert scheduler.last_error == "offline"


class TestRetries:
    @pytest.mark.asyncio
    async def test_backoff_delays(self) -> None:
        sync = AsyncMock(side_effect=TransportError("offline"))
        scheduler, timer = _scheduler(sync, max_retries=3)

        assert await scheduler.manual_sync() is False
        assert scheduler.retry_count == 1
        assert scheduler.next_retry_in() == 120

        await timer.advance(120)
        assert scheduler.retry_count == 2
        assert scheduler.next_retry_in() == 240

        await timer.advance(240)
        # Third failure hits max_retries: counter resets and nothing is scheduled
        assert scheduler.retry_count == 0
        assert scheduler.next_retry_in() is None
        assert timer.pending == []
        assert sync.await_count == 3

    @pytest.mark.asyncio
    async def test_success_resets_retry_count(self) -> None:
        sync = AsyncMock(side_effect=[TransportError("offline"), None])
        scheduler, timer = _scheduler(sync)

        await scheduler.manual_sync()
        await timer.advance(120)

        assert scheduler.retry_count == 0
        assert scheduler.last_error is None
        assert scheduler.last_success is not None

    @pytest.mark.asyncio
    async def test_success_cancels_pending_retry(self) -> None:
        sync = AsyncMock(side_effect=[TransportError("offline"), None])
        scheduler, timer = _scheduler(sync)

        await scheduler.manual_sync()
        assert await scheduler.on_app_state_change("active") is True

        assert scheduler.next_retry_in() is None
        assert timer.pending == []

    @pytest.mark.asyncio
    async def test_stop_cancels_retry(self) -> None:
        sync = AsyncMock(side_effect=TransportError("offline"))
        scheduler, timer = _scheduler(sync)

        await scheduler.manual_sync()
        scheduler.stop()
        await timer.advance(600)

        sync.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_status(self) -> None:
        scheduler, _ = _scheduler(AsyncMock(side_effect=TransportError("offline")))
        await scheduler.manual_sync()

        status = scheduler.status()
        assert status["state"] == "stopped"
        assert status["retry_count"] == 1
        assert status["next_retry_in"] == 120
        assert status["last_error"] == "offline"


class TestAsyncioTimer:
    @pytest.mark.asyncio
    async def test_fires_callback(self) -> None:
        fired = asyncio.Event()

        async def callback() -> None:
            fired.set()

        AsyncioTimer().schedule(0.01, callback)
        await asyncio.wait_for(fired.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_cancel(self) -> None:
        fired = asyncio.Event()

        async def callback() -> None:
            fired.set()

        AsyncioTimer().schedule(0.01, callback).cancel()
        await asyncio.sleep(0.05)
        assert not fired.is_set()
