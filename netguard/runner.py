from __future__ import annotations

"""Sequential health-check batch over every target."""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from datetime import datetime

import aiohttp
from loguru import logger

from .checker import HealthChecker
from .config import Settings
from .models import CheckResult, RunSummary, RunTrigger, Target, TargetResult, utcnow
from .runtime_status import RuntimeStatus
from .state_store import StateStore

SleepFunc = Callable[[float], Awaitable[None]]


class BatchRunner:
    """Check targets one after another with a random pause between them."""

    def __init__(
        self,
        settings: Settings,
        checker: HealthChecker,
        store: StateStore,
        runtime_status: RuntimeStatus,
        *,
        sleep: SleepFunc = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.checker = checker
        self.store = store
        self.runtime_status = runtime_status
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.delays: list[float] = []
        self._interrupt: asyncio.Event | None = None

    def interrupt(self) -> None:
        """Cut the current inter-target pause short."""
        if self._interrupt is not None:
            self._interrupt.set()

    async def _pause(self, delay: float) -> None:
        sleeper = asyncio.ensure_future(self.sleep(delay))
        waker = asyncio.ensure_future(self._interrupt.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waker):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, waker, return_exceptions=True)

    def _next_delay(self) -> float:
        return self.rng.uniform(self.settings.BATCH_DELAY_MIN_SEC, self.settings.BATCH_DELAY_MAX_SEC)

    async def _check_one(self, session: aiohttp.ClientSession, target: Target) -> tuple[CheckResult, int]:
        started = time.perf_counter()
        try:
            result = await self.checker.check(target.url, session=session)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("check crashed for {}: {}", target.url, exc)
            result = CheckResult.failure("unknown", str(exc) or "Check failed")
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        return result, elapsed_ms

    async def run(
        self,
        targets: list[Target],
        *,
        is_background: bool,
        trigger: RunTrigger = "scheduled",
        should_continue: Callable[[], bool] | None = None,
    ) -> RunSummary:
        """Check every target and apply results to the live view or the store.

        In the foreground the given target objects are updated in place and
        written back. In the background the live objects are left alone and the
        results are applied to the persisted list, which the live view picks up
        on its next reload.
        """
        self.delays = []
        self._interrupt = asyncio.Event()
        results: list[TargetResult] = []
        records: list[tuple[str, CheckResult, int]] = []
        logger.info("batch run started: {} targets background={} trigger={}", len(targets), is_background, trigger)

        async with aiohttp.ClientSession() as session:
            for index, target in enumerate(targets):
                if should_continue is not None and not should_continue():
                    logger.info("batch run stopped after {} of {} targets", index, len(targets))
                    break
                if index > 0:
                    delay = self._next_delay()
                    self.delays.append(delay)
                    await self._pause(delay)
                    if should_continue is not None and not should_continue():
                        logger.info("batch run stopped after {} of {} targets", index, len(targets))
                        break

                result, elapsed_ms = await self._check_one(session, target)
                records.append((target.id, result, elapsed_ms))
                results.append(
                    TargetResult(
                        target_id=target.id,
                        url=target.url,
                        status=result.status,
                        error=result.error_message,
                        response_time_ms=elapsed_ms,
                        status_code=result.status_code,
                        redirected=result.redirected,
                    )
                )
                logger.info(
                    "checked {} status={} code={} error={} in {}ms",
                    target.url,
                    result.status,
                    result.status_code,
                    result.error_kind,
                    elapsed_ms,
                )

        now = utcnow()
        if is_background:
            self._apply_to_persisted(records, now)
            self.runtime_status.mark_background_check(now)
        else:
            self._apply_to_live(targets, records, now)

        return RunSummary.from_results(results, is_background=is_background, trigger=trigger, now=now)

    def _apply_to_live(self, targets: list[Target], records: list[tuple[str, CheckResult, int]], now: datetime) -> None:
        by_id = {target.id: target for target in targets}
        for target_id, result, elapsed_ms in records:
            target = by_id.get(target_id)
            if target is not None:
                target.record_check(
                    result, response_time_ms=elapsed_ms, max_history=self.settings.MAX_CHECK_HISTORY, now=now
                )
        # Merge by id so targets added or removed during the run are preserved.
        persisted = [by_id.get(item.id, item) for item in self.store.get_targets()]
        self.store.set_targets(persisted)

    def _apply_to_persisted(self, records: list[tuple[str, CheckResult, int]], now: datetime) -> None:
        persisted = self.store.get_targets()
        by_id = {target.id: target for target in persisted}
        for target_id, result, elapsed_ms in records:
            target = by_id.get(target_id)
            if target is None:
                continue
            target.record_check(
                result, response_time_ms=elapsed_ms, max_history=self.settings.MAX_CHECK_HISTORY, now=now
            )
        self.store.set_targets(persisted)
