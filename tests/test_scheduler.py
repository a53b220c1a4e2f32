"""Scheduler state machine tests with a controlled clock."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from netguard.errors import ConfigInvalid
from netguard.models import RunSummary
from netguard.scheduler import BatchScheduler
from netguard.state_store import StateStore

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeBatch:
    def __init__(self, block: asyncio.Event | None = None) -> None:
        self.triggers: list[str] = []
        self.block = block

    async def __call__(self, trigger: str) -> RunSummary:
        self.triggers.append(trigger)
        if self.block is not None:
            await self.block.wait()
        return RunSummary(trigger=trigger)


def _scheduler(tmp_path, batch=None, clock=None, interval: int = 60) -> tuple[BatchScheduler, FakeBatch, Clock]:
    batch = batch or FakeBatch()
    clock = clock or Clock()
    store = StateStore(tmp_path, default_interval=interval)
    return BatchScheduler(store, batch, clock=clock), batch, clock


def test_enable_without_targets_is_a_no_op(tmp_path) -> None:
    scheduler, batch, _ = _scheduler(tmp_path)
    assert scheduler.enable(has_targets=False) is False
    assert scheduler.phase == "disabled"
    assert scheduler.state.next_run_at is None
    assert asyncio.run(scheduler.tick()) is None
    assert batch.triggers == []


def test_enable_arms_and_persists_next_run(tmp_path) -> None:
    scheduler, _, clock = _scheduler(tmp_path, interval=30)
    assert scheduler.enable(has_targets=True) is True
    assert scheduler.phase == "armed"
    assert scheduler.state.next_run_at == T0 + timedelta(minutes=30)
    assert scheduler.seconds_until_next() == 1800

    clock.advance(minutes=10)
    assert scheduler.seconds_until_next() == 1200
    assert StateStore(tmp_path).load_scheduler_state().next_run_at == T0 + timedelta(minutes=30)


def test_set_interval_same_value_is_idempotent(tmp_path) -> None:
    scheduler, _, clock = _scheduler(tmp_path)
    scheduler.enable(has_targets=True)

    scheduler.set_interval(15, clock.advance(minutes=1))
    first = scheduler.state.next_run_at
    scheduler.set_interval(15, clock.advance(seconds=30))

    assert first == T0 + timedelta(minutes=16)
    assert scheduler.state.next_run_at == first


def test_set_interval_rejects_non_positive(tmp_path) -> None:
    scheduler, _, _ = _scheduler(tmp_path)
    with pytest.raises(ConfigInvalid):
        scheduler.set_interval(0)


def test_tick_recomputes_next_run_from_fire_time(tmp_path) -> None:
    scheduler, batch, clock = _scheduler(tmp_path, interval=10)
    scheduler.enable(has_targets=True)

    fired_at = clock.advance(minutes=12)
    summary = asyncio.run(scheduler.tick(fired_at))

    assert summary is not None
    assert batch.triggers == ["scheduled"]
    assert scheduler.phase == "armed"
    assert scheduler.state.next_run_at == fired_at + timedelta(minutes=10)
    assert scheduler.state.last_run_at == fired_at
    assert scheduler.runs_executed == 1


def test_skipped_batch_leaves_last_run_untouched(tmp_path) -> None:
    async def skipped(trigger: str) -> None:
        return None

    scheduler, _, clock = _scheduler(tmp_path, batch=skipped, interval=10)
    scheduler.enable(has_targets=True)
    fired_at = clock.advance(minutes=12)

    assert asyncio.run(scheduler.tick(fired_at)) is None
    assert scheduler.state.last_run_at is None
    assert scheduler.runs_executed == 0
    assert scheduler.state.next_run_at == fired_at + timedelta(minutes=10)


def test_missed_runs_collapse_into_one_catch_up(tmp_path) -> None:
    scheduler, batch, clock = _scheduler(tmp_path, interval=60)
    scheduler.enable(has_targets=True)

    # Suspended across more than three intervals.
    resumed_at = clock.advance(hours=3, minutes=30)

    async def scenario():
        first = await scheduler.on_resume(resumed_at)
        second = await scheduler.on_resume(resumed_at)
        return first, second

    first, second = asyncio.run(scenario())
    assert first is not None and first.trigger == "catch_up"
    assert second is None
    assert batch.triggers == ["catch_up"]
    assert scheduler.state.next_run_at == resumed_at + timedelta(minutes=60)


def test_resume_before_due_does_nothing(tmp_path) -> None:
    scheduler, batch, clock = _scheduler(tmp_path)
    scheduler.enable(has_targets=True)
    assert asyncio.run(scheduler.on_resume(clock.advance(minutes=5))) is None
    assert batch.triggers == []


def test_tick_while_running_is_skipped(tmp_path) -> None:
    async def scenario():
        block = asyncio.Event()
        scheduler, batch, clock = _scheduler(tmp_path, batch=FakeBatch(block))
        scheduler.enable(has_targets=True)
        first = asyncio.create_task(scheduler.tick(clock.advance(minutes=61)))
        await asyncio.sleep(0)
        assert scheduler.is_busy
        assert scheduler.phase == "running"
        skipped = await scheduler.tick(clock.now)
        block.set()
        await first
        return scheduler, batch, skipped

    scheduler, batch, skipped = asyncio.run(scenario())
    assert skipped is None
    assert batch.triggers == ["scheduled"]
    assert scheduler.ticks_skipped == 1
    assert not scheduler.is_busy


def test_disable_clears_schedule(tmp_path) -> None:
    scheduler, _, _ = _scheduler(tmp_path)
    scheduler.enable(has_targets=True)
    scheduler.disable()
    assert scheduler.phase == "disabled"
    assert scheduler.seconds_until_next() is None
    state = StateStore(tmp_path).load_scheduler_state()
    assert state.is_enabled is False
    assert state.next_run_at is None


def test_enable_after_restart_keeps_persisted_next_run(tmp_path) -> None:
    scheduler, _, clock = _scheduler(tmp_path)
    scheduler.enable(has_targets=True)
    planned = scheduler.state.next_run_at

    again, _, _ = _scheduler(tmp_path, clock=Clock(T0 + timedelta(minutes=5)))
    assert again.enable(has_targets=True) is True
    assert again.state.next_run_at == planned


def test_run_forever_fires_due_run_and_exits_when_disabled(tmp_path) -> None:
    async def scenario():
        clock = Clock()
        scheduler, batch, _ = _scheduler(tmp_path, clock=clock, interval=1)
        scheduler.enable(has_targets=True)
        scheduler.state.next_run_at = T0
        task = asyncio.create_task(scheduler.run_forever())
        for _ in range(20):
            await asyncio.sleep(0)
            if batch.triggers:
                break
        scheduler.disable()
        await asyncio.wait_for(task, timeout=1)
        return batch

    batch = asyncio.run(scenario())
    assert batch.triggers == ["scheduled"]
