from __future__ import annotations

"""Monitoring engine: owns the store, checker, runner, dispatcher and scheduler."""

import asyncio
import sys
from datetime import datetime
from typing import Any, TextIO

from loguru import logger

from .checker import HealthChecker
from .config import Settings
from .dispatcher import CallbackDispatcher
from .errors import ConfigInvalid
from .models import (
    CheckResult,
    DeliveryOutcome,
    ReceiverConfig,
    RunSummary,
    RunTrigger,
    Target,
    require_valid_url,
    utcnow,
)
from .runner import BatchRunner
from .runtime_status import RuntimeStatus
from .scheduler import BatchScheduler, Clock
from .state_store import StateKey, StateStore


def detect_background(run_context: str, stream: TextIO | None = None) -> bool:
    """Resolve RUN_CONTEXT; `auto` treats a non-interactive stdout as background."""
    if run_context == "background":
        return True
    if run_context == "foreground":
        return False
    stream = stream or sys.stdout
    try:
        return not stream.isatty()
    except (AttributeError, ValueError):
        return True


class MonitorEngine:
    """Single owned object graph; constructed once by the host and shared by reference."""

    def __init__(
        self,
        settings: Settings,
        store: StateStore | None = None,
        *,
        checker: HealthChecker | None = None,
        runtime_status: RuntimeStatus | None = None,
        clock: Clock = utcnow,
        runner_sleep=asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.store = store or StateStore(
            settings.STATE_DIR,
            flush_delay_sec=settings.STATE_FLUSH_DELAY_SEC,
            default_interval=settings.CHECK_INTERVAL_MINUTES,
        )
        self._seed_from_settings()

        self.runtime_status = runtime_status or RuntimeStatus()
        self.runtime_status.set_background(detect_background(settings.RUN_CONTEXT))
        self.checker = checker or HealthChecker(settings)
        self.runner = BatchRunner(settings, self.checker, self.store, self.runtime_status, sleep=runner_sleep)
        self.dispatcher = CallbackDispatcher(settings, self.store)
        self.scheduler = BatchScheduler(self.store, self.run_once, clock=clock)
        self.clock = clock

        self._targets: list[Target] = self.store.get_targets()
        self._targets_stale = False
        self._run_active = False
        self._cancel_requested = False
        self.last_outcome: DeliveryOutcome | None = None

    def _seed_from_settings(self) -> None:
        """Environment values seed the store on first boot only."""
        if self.settings.RECEIVER_URL and not self.store.has_persisted(StateKey.RECEIVER):
            self.store.set_receiver(ReceiverConfig(name=self.settings.RECEIVER_NAME, url=self.settings.RECEIVER_URL))
        if self.settings.SOURCE_ENDPOINT and not self.store.has_persisted(StateKey.SOURCE_ENDPOINT):
            self.store.set(StateKey.SOURCE_ENDPOINT, self.settings.SOURCE_ENDPOINT)

    # Targets.

    @property
    def targets(self) -> list[Target]:
        """Live target view; reloaded from the store after a background run."""
        if self._targets_stale:
            self._targets = self.store.get_targets()
            self._targets_stale = False
        return self._targets

    def mark_targets_stale(self) -> None:
        self._targets_stale = True

    def add_target(self, url: str) -> Target | None:
        try:
            normalized = require_valid_url(url)
        except ConfigInvalid as exc:
            logger.warning("add target skipped: {}", exc)
            return None
        if any(target.url == normalized for target in self.targets):
            logger.info("target already monitored: {}", normalized)
            return None
        target = Target(url=normalized)
        self.targets.append(target)
        self.store.set_targets(self.targets)
        logger.info("target added id={} url={}", target.id, target.url)
        return target

    def remove_target(self, target_id: str) -> bool:
        remaining = [target for target in self.targets if target.id != target_id]
        if len(remaining) == len(self.targets):
            logger.warning("remove target skipped: unknown id {}", target_id)
            return False
        self.replace_targets(remaining)
        logger.info("target removed id={}", target_id)
        return True

    def replace_targets(self, targets: list[Target]) -> None:
        self._targets = list(targets)
        self._targets_stale = False
        self.store.set_targets(self._targets)

    # Configuration.

    @property
    def receiver(self) -> ReceiverConfig:
        return self.store.get_receiver()

    def set_receiver(self, name: str, url: str) -> bool:
        """Set the summary receiver; an empty url disables delivery."""
        if url:
            try:
                url = require_valid_url(url)
            except ConfigInvalid as exc:
                logger.warning("receiver not changed: {}", exc)
                return False
        self.store.set_receiver(ReceiverConfig(name=name.strip(), url=url))
        logger.info("receiver set name={} url={}", name, url or "<none>")
        return True

    @property
    def source_endpoint(self) -> str:
        return self.store.get(StateKey.SOURCE_ENDPOINT)

    def set_source_endpoint(self, endpoint: str) -> bool:
        if endpoint:
            try:
                endpoint = require_valid_url(endpoint)
            except ConfigInvalid as exc:
                logger.warning("source endpoint not changed: {}", exc)
                return False
        self.store.set(StateKey.SOURCE_ENDPOINT, endpoint)
        return True

    def set_interval(self, minutes: int) -> bool:
        try:
            self.scheduler.set_interval(minutes, self.clock())
        except ConfigInvalid as exc:
            logger.warning("interval not changed: {}", exc)
            return False
        return True

    def enable(self) -> bool:
        return self.scheduler.enable(bool(self.targets), self.clock())

    def disable(self) -> None:
        self.scheduler.disable()

    # Runs.

    def is_background(self) -> bool:
        return self.runtime_status.is_background

    def request_cancel(self) -> None:
        """Ask a running batch to stop at its next check-point."""
        self._cancel_requested = True
        self.runner.interrupt()

    def _should_continue(self) -> bool:
        return not self._cancel_requested

    async def run_once(self, trigger: RunTrigger = "manual") -> RunSummary | None:
        """Check every target, deliver the summary and update run statistics."""
        if self._run_active:
            logger.warning("run skipped: another run is in progress")
            return None
        targets = list(self.targets)
        if not targets:
            logger.info("run skipped: no targets configured")
            return None

        background = self.is_background()
        self._run_active = True
        self._cancel_requested = False
        self.runtime_status.mark_run_started()
        try:
            summary = await self.runner.run(
                targets,
                is_background=background,
                trigger=trigger,
                should_continue=self._should_continue,
            )
            if background:
                self.mark_targets_stale()
            self.last_outcome = await self.dispatcher.dispatch(summary, self.receiver)

            stats = self.store.get_stats()
            stats.total_runs += 1
            stats.last_successful_run_at = summary.timestamp
            self.store.save_stats(stats)
            logger.info(
                "run finished trigger={} total={} active={} inactive={} delivery={}",
                trigger,
                summary.total_count,
                summary.active_count,
                summary.inactive_count,
                self.last_outcome.status,
            )
            return summary
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.runtime_status.mark_error(f"run failed: {exc}")
            logger.exception("run failed: {}", exc)
            return None
        finally:
            self._run_active = False
            self.runtime_status.mark_run_finished()

    async def check_url(self, url: str) -> CheckResult:
        """One-off probe of a url without touching stored targets."""
        return await self.checker.check(require_valid_url(url))

    # Host events.

    async def on_resume(self, now: datetime | None = None) -> RunSummary | None:
        self.runtime_status.mark_resume()
        self.mark_targets_stale()
        return await self.scheduler.on_resume(now or self.clock())

    def on_suspend(self) -> None:
        """Flush pending state before the host may be frozen or killed."""
        self.store.flush()

    def clear_all(self) -> None:
        self.scheduler.disable()
        self.store.clear_all()
        self.scheduler.state = self.store.load_scheduler_state()
        self._targets = []
        self._targets_stale = False
        logger.info("all state cleared")

    def status(self) -> dict[str, Any]:
        now = self.clock()
        targets = self.targets
        stats = self.store.get_stats()
        last_summary: RunSummary | None = self.store.get(StateKey.LAST_SUMMARY)
        return {
            "targets": len(targets),
            "active": sum(1 for target in targets if target.status == "active"),
            "inactive": sum(1 for target in targets if target.status == "inactive"),
            "enabled": self.scheduler.is_armed,
            "phase": self.scheduler.phase,
            "interval_minutes": self.scheduler.state.interval_minutes,
            "next_run_at": self.scheduler.state.next_run_at.isoformat() if self.scheduler.state.next_run_at else None,
            "seconds_until_next": self.scheduler.seconds_until_next(now),
            "receiver": self.receiver.model_dump(),
            "source_endpoint": self.source_endpoint or None,
            "stats": stats.model_dump(mode="json"),
            "uptime_seconds": stats.uptime_seconds(now),
            "last_summary": last_summary.model_dump(mode="json", exclude={"results"}) if last_summary else None,
            "runtime": {
                "is_background": self.runtime_status.is_background,
                "background_checks": self.runtime_status.background_checks,
                "resumes": self.runtime_status.resumes,
                "last_error": self.runtime_status.last_error,
                "heartbeat_age_sec": self.runtime_status.heartbeat_age_sec(now),
            },
        }
