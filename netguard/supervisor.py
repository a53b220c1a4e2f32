from __future__ import annotations

"""Service supervisor: lifecycle, health monitoring, bounded restart, reconciliation."""

import asyncio
from collections.abc import Iterable
from datetime import datetime

from loguru import logger

from .config import Settings
from .engine import MonitorEngine
from .models import Notification, ReceiverConfig, ServiceStats, TargetDiff
from .notifier import NotificationGateway, NotificationQueue
from .target_source import HttpTargetSource, TargetSource, diff_targets, group_receiver, merge_targets


class ServiceSupervisor:
    """Keep the scheduler loop alive and the target list in sync.

    Three independent tasks run while started: the scheduler loop, a health
    monitor and, when a source endpoint is configured, the reconciliation loop.
    A degraded service is restarted in place (stop, short pause, start); there
    is no escalation beyond that.
    """

    def __init__(
        self,
        engine: MonitorEngine,
        settings: Settings,
        *,
        source: TargetSource | None = None,
        notifications: NotificationQueue | None = None,
    ) -> None:
        self.engine = engine
        self.settings = settings
        self.store = engine.store
        self._source = source
        self.notifications = notifications or NotificationQueue(
            engine.store,
            settings.MAX_NOTIFICATIONS,
            gateway=NotificationGateway(settings.NOTIFY_URL) if settings.NOTIFY_URL else None,
        )
        self.is_running = False
        self.sync_failures = 0
        self._loop_task: asyncio.Task | None = None
        self._monitor_task: asyncio.Task | None = None
        self._sync_task: asyncio.Task | None = None

    @property
    def source(self) -> TargetSource | None:
        if self._source is not None:
            return self._source
        endpoint = self.engine.source_endpoint
        if not endpoint:
            return None
        return HttpTargetSource(self.settings, endpoint, self.settings.SOURCE_CALLBACK_NAME)

    @property
    def service_restarts(self) -> int:
        return self.store.get_stats().service_restarts

    @property
    def loop_task(self) -> asyncio.Task | None:
        return self._loop_task

    def list_notifications(self) -> list[Notification]:
        return self.notifications.items()

    def clear_notifications(self) -> None:
        self.notifications.clear()

    def is_loop_alive(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(
        self,
        targets: Iterable[str] | None = None,
        receiver: ReceiverConfig | None = None,
        interval_minutes: int | None = None,
    ) -> bool:
        """Apply arguments, arm the scheduler and spawn the service tasks."""
        if self.is_running:
            return True
        for url in targets or ():
            self.engine.add_target(url)
        if receiver is not None:
            self.engine.set_receiver(receiver.name, receiver.url)
        if interval_minutes is not None:
            self.engine.set_interval(interval_minutes)

        if not self.engine.enable():
            logger.warning("service not started: no targets configured")
            return False

        stats = self.store.get_stats()
        if stats.started_at is not None:
            self._fold_stale_session(stats)
        stats.started_at = self.engine.clock()
        stats.consecutive_failures = 0
        self.store.save_stats(stats)

        self.is_running = True
        self._loop_task = asyncio.create_task(self.engine.scheduler.run_forever(), name="netguard-scheduler")
        self._monitor_task = asyncio.create_task(self._health_loop(), name="netguard-health")
        self._sync_task = None
        if self.source is not None:
            self._sync_task = asyncio.create_task(self._sync_loop(), name="netguard-sync")
        logger.info(
            "service started targets={} interval={}m source={}",
            len(self.engine.targets),
            self.engine.scheduler.state.interval_minutes,
            self.engine.source_endpoint or "<none>",
        )
        return True

    @staticmethod
    def _fold_stale_session(stats: ServiceStats) -> None:
        """Credit a session that ended without `stop()`, up to its last sign of life."""
        marks = [
            moment
            for moment in (stats.last_health_check_at, stats.last_successful_run_at)
            if moment is not None and moment >= stats.started_at
        ]
        if marks:
            credited = int((max(marks) - stats.started_at).total_seconds())
            stats.total_uptime_seconds += credited
            logger.info("previous session ended without stop, credited {}s uptime", credited)
        stats.started_at = None

    async def stop(self) -> None:
        """Disarm, stop background tasks and fold this session into total uptime."""
        if not self.is_running:
            return
        self.is_running = False
        self.engine.request_cancel()
        self.engine.disable()

        current = asyncio.current_task()
        tasks = [task for task in (self._monitor_task, self._sync_task) if task is not None and task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._loop_task is not None and self._loop_task is not current:
            # The disarmed loop exits by itself once the in-flight check completes or times out.
            await asyncio.gather(self._loop_task, return_exceptions=True)

        stats = self.store.get_stats()
        if stats.started_at is not None:
            stats.total_uptime_seconds = stats.uptime_seconds(self.engine.clock())
            stats.started_at = None
        self.store.save_stats(stats)
        logger.info("service stopped")

    def check_health(self, now: datetime | None = None) -> str | None:
        """Return the reason the service is degraded, or None when healthy."""
        now = now or self.engine.clock()
        stats = self.store.get_stats()
        stats.last_health_check_at = now
        self.store.save_stats(stats)

        if not self.is_loop_alive():
            return "scheduler loop is not alive"
        references = [moment for moment in (stats.last_successful_run_at, stats.started_at) if moment is not None]
        if references:
            idle = now - max(references)
            if idle > 2 * self.engine.scheduler.state.interval:
                return f"no completed run for {int(idle.total_seconds())}s"
        if stats.consecutive_failures >= self.settings.MAX_CONSECUTIVE_FAILURES:
            return f"{stats.consecutive_failures} consecutive delivery failures"
        return None

    async def check_and_recover(self, now: datetime | None = None) -> bool:
        """Run one health check and restart when degraded."""
        if not self.is_running:
            return False
        reason = self.check_health(now)
        if reason is None:
            return False
        await self.restart(reason)
        return True

    async def restart(self, reason: str) -> bool:
        logger.warning("service degraded, restarting: {}", reason)
        await self.stop()
        await asyncio.sleep(self.settings.RESTART_DELAY_SEC)
        started = await self.start()

        stats = self.store.get_stats()
        stats.service_restarts += 1
        self.store.save_stats(stats)
        self.notifications.push(
            "service_restarted",
            "Service restarted",
            f"Monitoring service restarted: {reason}",
            {"reason": reason, "restarts": stats.service_restarts, "started": started},
        )
        return started

    async def _health_loop(self) -> None:
        me = asyncio.current_task()
        while self.is_running and self._monitor_task is me:
            await asyncio.sleep(self.settings.HEALTH_CHECK_INTERVAL_SEC)
            if not self.is_running or self._monitor_task is not me:
                break
            try:
                await self.check_and_recover()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.engine.runtime_status.mark_error(f"health check failed: {exc}")
                logger.exception("health check failed: {}", exc)

    async def _sync_loop(self) -> None:
        me = asyncio.current_task()
        while self.is_running and self._sync_task is me:
            try:
                await self.sync_targets()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.engine.runtime_status.mark_error(f"sync failed: {exc}")
                logger.exception("sync loop failed: {}", exc)
            await asyncio.sleep(self.settings.SOURCE_SYNC_INTERVAL_MINUTES * 60)

    async def sync_targets(self, now: datetime | None = None) -> TargetDiff | None:
        """Reconcile local targets with the external source; None when the fetch failed."""
        source = self.source
        if source is None:
            return None
        try:
            items = await source.fetch()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.sync_failures += 1
            logger.warning("target sync failed ({} in a row): {}", self.sync_failures, exc)
            if self.sync_failures == self.settings.MAX_CONSECUTIVE_FAILURES:
                self.notifications.push(
                    "sync_failed",
                    "Target sync failing",
                    f"Target sync failed {self.sync_failures} times in a row: {exc}",
                    {"failures": self.sync_failures, "error": str(exc)},
                )
            return None

        self.sync_failures = 0
        now = now or self.engine.clock()
        current = self.engine.targets
        diff = diff_targets(current, items)
        if diff.has_changes:
            self.engine.replace_targets(merge_targets(current, items))
            logger.info(
                "targets reconciled added={} modified={} removed={}",
                len(diff.added),
                len(diff.modified),
                len(diff.removed),
            )

        receiver = group_receiver(items, self.settings.SOURCE_CALLBACK_NAME)
        if receiver is not None and receiver.url != self.engine.receiver.url:
            self.engine.set_receiver(receiver.name, receiver.url)

        stats = self.store.get_stats()
        stats.last_sync_at = now
        if diff.added:
            stats.new_urls_discovered += len(diff.added)
        self.store.save_stats(stats)

        if diff.added:
            self.notifications.push(
                "new_urls",
                "New targets discovered",
                f"{len(diff.added)} new URLs detected from source",
                {"urls": [target.url for target in diff.added]},
            )
        return diff
