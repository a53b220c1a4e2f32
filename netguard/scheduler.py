from __future__ import annotations

"""Run scheduler: periodic cadence, drift correction and missed-run recovery."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Literal

from loguru import logger

from .errors import ConfigInvalid
from .models import RunSummary, RunTrigger, SchedulerState, utcnow
from .state_store import StateStore

SchedulerPhase = Literal["disabled", "armed", "running"]
RunBatch = Callable[[RunTrigger], Awaitable[RunSummary | None]]
Clock = Callable[[], datetime]


class BatchScheduler:
    """Own the run cadence; `next_run_at` is the only scheduling fact.

    The loop in `run_forever` merely sleeps until `next_run_at` and then
    ticks. Every tick recomputes `next_run_at` from the moment it fires, so a
    long suspension yields one catch-up run instead of a burst.
    """

    def __init__(
        self,
        store: StateStore,
        run_batch: RunBatch,
        *,
        clock: Clock = utcnow,
        max_sleep_sec: float = 30.0,
    ) -> None:
        self.store = store
        self.run_batch = run_batch
        self.clock = clock
        self.max_sleep_sec = max_sleep_sec
        self.state: SchedulerState = store.load_scheduler_state()
        self.phase: SchedulerPhase = "disabled"
        # Re-entrancy guard: a tick arriving during a running batch is skipped.
        self._busy = False
        self._wake = asyncio.Event()
        self.runs_executed = 0
        self.ticks_skipped = 0

    def _persist(self) -> None:
        self.store.save_scheduler_state(self.state)

    @property
    def is_armed(self) -> bool:
        return self.phase != "disabled"

    @property
    def is_busy(self) -> bool:
        return self._busy

    def wake(self) -> None:
        """Interrupt the loop's sleep so it re-reads `next_run_at`."""
        self._wake.set()

    def enable(self, has_targets: bool, now: datetime | None = None) -> bool:
        """Arm the scheduler; returns False (no-op) when there is nothing to check."""
        if not has_targets:
            logger.info("scheduler not enabled: no targets configured")
            return False
        if self.is_armed:
            return True
        reference = now or self.clock()
        # A persisted next_run_at from before a restart is kept; the loop will
        # treat it as a missed run if it already passed.
        if not self.state.is_enabled or self.state.next_run_at is None:
            self.state.next_run_at = reference + self.state.interval
        self.state.is_enabled = True
        self.phase = "armed"
        self._persist()
        self.wake()
        logger.info(
            "scheduler armed interval={}m next_run_at={}",
            self.state.interval_minutes,
            self.state.next_run_at.isoformat(),
        )
        return True

    def disable(self) -> None:
        self.phase = "disabled"
        self.state.is_enabled = False
        self.state.next_run_at = None
        self._persist()
        self.wake()
        logger.info("scheduler disabled")

    def set_interval(self, minutes: int, now: datetime | None = None) -> None:
        """Change cadence; while armed this re-arms from now."""
        if minutes <= 0:
            raise ConfigInvalid(f"interval must be a positive number of minutes: {minutes}")
        if minutes == self.state.interval_minutes and self.state.next_run_at is not None:
            return
        self.state.interval_minutes = minutes
        if self.is_armed:
            self.state.next_run_at = (now or self.clock()) + timedelta(minutes=minutes)
            self.wake()
        self._persist()
        logger.info("scheduler interval set to {}m", minutes)

    def seconds_until_next(self, now: datetime | None = None) -> float | None:
        """Countdown derived from `next_run_at`; never stored."""
        if not self.is_armed:
            return None
        return self.state.seconds_until_next(now or self.clock())

    def is_due(self, now: datetime | None = None) -> bool:
        remaining = self.seconds_until_next(now)
        return remaining is not None and remaining <= 0

    async def tick(self, now: datetime | None = None, trigger: RunTrigger = "scheduled") -> RunSummary | None:
        """Run one batch unless disabled or a batch is already in flight."""
        if not self.is_armed:
            return None
        if self._busy:
            self.ticks_skipped += 1
            logger.warning("tick skipped: previous batch still running")
            return None
        self._busy = True
        fired_at = now or self.clock()
        self.state.next_run_at = fired_at + self.state.interval
        self.phase = "running"
        self._persist()
        try:
            summary = await self.run_batch(trigger)
            if summary is not None:
                self.state.last_run_at = self.clock()
                self.runs_executed += 1
            return summary
        finally:
            self._busy = False
            if self.phase == "running":
                self.phase = "armed"
            self._persist()

    async def on_resume(self, now: datetime | None = None) -> RunSummary | None:
        """Perform exactly one catch-up run if the scheduled time passed while suspended."""
        reference = now or self.clock()
        if self.phase != "armed" or self.state.next_run_at is None:
            return None
        if reference < self.state.next_run_at:
            return None
        logger.info(
            "missed run detected: scheduled {} resumed {}",
            self.state.next_run_at.isoformat(),
            reference.isoformat(),
        )
        return await self.tick(reference, trigger="catch_up")

    async def run_forever(self) -> None:
        """Sleep until the next run is due, tick, repeat until disabled."""
        logger.info("scheduler loop started")
        # Bind the wake event to the loop that is running us.
        self._wake = asyncio.Event()
        try:
            while self.is_armed:
                self._wake.clear()
                remaining = self.seconds_until_next()
                if remaining is None:
                    break
                if remaining <= 0:
                    try:
                        await self.tick()
                    except Exception as exc:
                        logger.exception("scheduled run failed: {}", exc)
                    continue
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=min(remaining, self.max_sleep_sec))
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("scheduler loop exited")
