from __future__ import annotations

"""Display-only runtime counters shared by host, runner and supervisor."""

from dataclasses import dataclass, field
from datetime import datetime

from .models import utcnow


@dataclass
class RuntimeStatus:
    """Mutable process state that is never persisted.

    `background_checks` only counts runs made while the host reported a
    background context, unlike `ServiceStats.total_runs` which counts every run.
    """

    process_started_at: datetime = field(default_factory=utcnow)
    last_heartbeat_at: datetime | None = None
    last_run_started_at: datetime | None = None
    last_run_finished_at: datetime | None = None
    last_error: str | None = None
    is_background: bool = False
    run_in_progress: bool = False
    runs_started: int = 0
    background_checks: int = 0
    resumes: int = 0

    def mark_heartbeat(self, now: datetime | None = None) -> None:
        """Update generic process heartbeat timestamp."""
        self.last_heartbeat_at = now or utcnow()

    def mark_run_started(self, now: datetime | None = None) -> None:
        timestamp = now or utcnow()
        self.run_in_progress = True
        self.runs_started += 1
        self.last_run_started_at = timestamp
        self.mark_heartbeat(timestamp)

    def mark_run_finished(self, now: datetime | None = None) -> None:
        timestamp = now or utcnow()
        self.run_in_progress = False
        self.last_run_finished_at = timestamp
        self.mark_heartbeat(timestamp)

    def mark_background_check(self, now: datetime | None = None) -> None:
        """Count one run performed while the user was away."""
        self.background_checks += 1
        self.mark_heartbeat(now or utcnow())

    def mark_resume(self, now: datetime | None = None) -> None:
        self.resumes += 1
        self.mark_heartbeat(now or utcnow())

    def mark_error(self, error: str, now: datetime | None = None) -> None:
        """Record latest runtime error."""
        self.last_error = error
        self.mark_heartbeat(now or utcnow())

    def set_background(self, is_background: bool, now: datetime | None = None) -> None:
        self.is_background = is_background
        self.mark_heartbeat(now or utcnow())

    def heartbeat_age_sec(self, now: datetime | None = None) -> int | None:
        """Return seconds since last heartbeat, or None if not available yet."""
        if self.last_heartbeat_at is None:
            return None
        reference = now or utcnow()
        return max(int((reference - self.last_heartbeat_at).total_seconds()), 0)
