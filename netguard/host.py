from __future__ import annotations

"""Plain asyncio execution host: heartbeat, suspend/resume detection, signals."""

import asyncio
import signal
import time
from collections.abc import Callable

from loguru import logger

from .config import Settings
from .engine import MonitorEngine
from .supervisor import ServiceSupervisor


class AsyncioHost:
    """Run the supervisor until stopped and forward host lifecycle events.

    A suspended process does not advance the monotonic clock while wall time
    keeps moving, so a wall-clock jump larger than `RESUME_GAP_SEC` between
    two heartbeats is treated as a resume.
    """

    def __init__(
        self,
        engine: MonitorEngine,
        supervisor: ServiceSupervisor,
        settings: Settings,
        *,
        monotonic: Callable[[], float] = time.monotonic,
        wall: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.supervisor = supervisor
        self.settings = settings
        self.monotonic = monotonic
        self.wall = wall
        self.stop_event = asyncio.Event()
        self._last_mono = monotonic()
        self._last_wall = wall()
        self._resume_task: asyncio.Task | None = None

    def is_alive(self) -> bool:
        return self.supervisor.is_running and self.supervisor.is_loop_alive()

    def request_stop(self) -> None:
        self.stop_event.set()

    def on_suspend(self) -> None:
        self.engine.on_suspend()

    def detect_resume(self) -> bool:
        """Compare wall and monotonic progress since the previous call."""
        mono, wall = self.monotonic(), self.wall()
        gap = (wall - self._last_wall) - (mono - self._last_mono)
        self._last_mono, self._last_wall = mono, wall
        return gap > self.settings.RESUME_GAP_SEC

    async def _resume(self) -> None:
        try:
            await self.engine.on_resume()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.engine.runtime_status.mark_error(f"resume failed: {exc}")
            logger.exception("resume handling failed: {}", exc)

    def beat(self) -> None:
        self.engine.runtime_status.mark_heartbeat()
        if not self.detect_resume():
            return
        logger.info("host resume detected")
        if self._resume_task is None or self._resume_task.done():
            self._resume_task = asyncio.create_task(self._resume(), name="netguard-resume")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("signal handler for {} unavailable on this platform", sig)

    async def run(self) -> bool:
        """Start the service and heartbeat until stopped; False when nothing could start."""
        self.stop_event = asyncio.Event()
        self._install_signal_handlers()

        started = await self.supervisor.start()
        if not started and self.supervisor.source is not None:
            await self.supervisor.sync_targets()
            started = await self.supervisor.start()
        if not started:
            logger.error("nothing to monitor: add targets or configure a source endpoint")
            return False

        try:
            while not self.stop_event.is_set():
                self.beat()
                try:
                    await asyncio.wait_for(self.stop_event.wait(), timeout=self.settings.HEARTBEAT_INTERVAL_SEC)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.supervisor.stop()
            if self._resume_task is not None:
                # A catch-up run stops at its next check-point like a scheduled one.
                await asyncio.gather(self._resume_task, return_exceptions=True)
            self.on_suspend()
            logger.info("host stopped")
        return True
