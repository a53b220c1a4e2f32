from __future__ import annotations

"""Domain models shared by the checker, scheduler, dispatcher and supervisor."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ConfigInvalid

TargetStatus = Literal["checking", "active", "inactive"]
ProbeStatus = Literal["active", "inactive"]
ErrorKind = Literal["timeout", "network", "abort", "unknown"]
DeliveryStatus = Literal["delivered", "failed", "skipped"]
DeliveryErrorKind = Literal["timeout", "transport", "rejected"]
NotificationType = Literal["new_urls", "sync_failed", "service_restarted"]
TargetOrigin = Literal["manual", "external"]
RunTrigger = Literal["scheduled", "catch_up", "manual"]


def utcnow() -> datetime:
    """Timezone-aware current time; every persisted timestamp uses UTC."""
    return datetime.now(timezone.utc)


def is_valid_url(value: str | None) -> bool:
    """Return whether value is an absolute http(s) URL."""
    if not value:
        return False
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def require_valid_url(value: str | None) -> str:
    """Normalize a URL or raise ConfigInvalid."""
    normalized = (value or "").strip()
    if not is_valid_url(normalized):
        raise ConfigInvalid(f"not an absolute http/https url: {value!r}")
    return normalized


class CheckRecord(BaseModel):
    """One history entry per check; retries collapse into the final outcome."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    status: ProbeStatus
    response_time_ms: int | None = None
    status_code: int | None = None
    redirected: bool | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None


class CheckResult(BaseModel):
    """Tagged outcome of a probe: either a classified response or an error kind."""

    model_config = ConfigDict(frozen=True)

    status: ProbeStatus
    status_code: int | None = None
    status_text: str | None = None
    redirected: bool = False
    redirect_url: str | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "active"

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> CheckResult:
        return cls(status="inactive", error_kind=kind, error_message=message)


class Target(BaseModel):
    """One monitored endpoint with a bounded check history."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    url: str
    status: TargetStatus = "checking"
    last_checked_at: datetime | None = None
    history: list[CheckRecord] = Field(default_factory=list)
    success_count: int = 0
    error_count: int = 0
    origin: TargetOrigin = "manual"

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        """Only absolute http/https URLs can be monitored."""
        try:
            return require_valid_url(value)
        except ConfigInvalid as exc:
            raise ValueError(str(exc)) from exc

    def record_check(
        self,
        result: CheckResult,
        *,
        response_time_ms: int | None,
        max_history: int,
        now: datetime | None = None,
    ) -> CheckRecord:
        """Apply one check outcome and append it to the ring-buffer history."""
        timestamp = now or utcnow()
        record = CheckRecord(
            timestamp=timestamp,
            status=result.status,
            response_time_ms=response_time_ms,
            status_code=result.status_code,
            redirected=result.redirected if result.status_code is not None else None,
            error_kind=result.error_kind,
            error_message=result.error_message,
        )
        self.status = result.status
        self.last_checked_at = timestamp
        if result.ok:
            self.success_count += 1
        else:
            self.error_count += 1
        self.history.append(record)
        overflow = len(self.history) - max(max_history, 1)
        if overflow > 0:
            del self.history[:overflow]
        return record


class ReceiverConfig(BaseModel):
    """Destination of the per-run summary payload."""

    name: str = ""
    url: str = ""

    @property
    def is_valid(self) -> bool:
        return is_valid_url(self.url)


class TargetResult(BaseModel):
    """One row of a run summary."""

    target_id: str | None = None
    url: str
    status: ProbeStatus
    error: str | None = None
    response_time_ms: int | None = None
    status_code: int | None = None
    redirected: bool = False


class RunSummary(BaseModel):
    """Aggregated outcome of one batch run."""

    timestamp: datetime = Field(default_factory=utcnow)
    results: list[TargetResult] = Field(default_factory=list)
    total_count: int = 0
    active_count: int = 0
    inactive_count: int = 0
    delivered: bool = False
    is_background: bool = False
    trigger: RunTrigger = "scheduled"

    @classmethod
    def from_results(
        cls,
        results: list[TargetResult],
        *,
        is_background: bool,
        trigger: RunTrigger = "scheduled",
        now: datetime | None = None,
    ) -> RunSummary:
        active = sum(1 for item in results if item.status == "active")
        return cls(
            timestamp=now or utcnow(),
            results=list(results),
            total_count=len(results),
            active_count=active,
            inactive_count=len(results) - active,
            is_background=is_background,
            trigger=trigger,
        )


class SchedulerState(BaseModel):
    """Persisted scheduling facts; next_run_at is the only source of truth."""

    is_enabled: bool = False
    interval_minutes: int = 60
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.interval_minutes)

    def seconds_until_next(self, now: datetime | None = None) -> float | None:
        """Derived countdown; never stored."""
        if not self.is_enabled or self.next_run_at is None:
            return None
        reference = now or utcnow()
        return max((self.next_run_at - reference).total_seconds(), 0.0)


class ServiceStats(BaseModel):
    """Stat-of-record counters; reset only by clear-all."""

    total_runs: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    consecutive_failures: int = 0
    started_at: datetime | None = None
    total_uptime_seconds: int = 0
    service_restarts: int = 0
    last_successful_run_at: datetime | None = None
    last_health_check_at: datetime | None = None
    last_sync_at: datetime | None = None
    new_urls_discovered: int = 0

    def uptime_seconds(self, now: datetime | None = None) -> int:
        """Accumulated uptime plus the current session, if any."""
        if self.started_at is None:
            return self.total_uptime_seconds
        reference = now or utcnow()
        return self.total_uptime_seconds + max(int((reference - self.started_at).total_seconds()), 0)


class DeliveryOutcome(BaseModel):
    """Result of one dispatch attempt."""

    status: DeliveryStatus
    error_kind: DeliveryErrorKind | None = None
    status_code: int | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


class Notification(BaseModel):
    """Supervisor event kept in the bounded notification queue."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False

    def format_message(self) -> str:
        """Human-readable body for external notification channels."""
        return f"{self.message}\ntime: {self.timestamp:%Y-%m-%d %H:%M:%S}Z"


class SourceItem(BaseModel):
    """One record served by the external target source."""

    model_config = ConfigDict(extra="ignore")

    id: int | str | None = None
    callback_name: str = ""
    url: str = ""
    callback_url: str = ""
    is_active: int = 1
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("callback_name", "url", "callback_url", mode="before")
    @classmethod
    def parse_text(cls, value: object) -> str:
        """Coerce missing markers to empty strings."""
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("is_active", mode="before")
    @classmethod
    def parse_flag(cls, value: object) -> int:
        """Accept bool, numeric or textual activity flags."""
        if value in (None, ""):
            return 1
        if isinstance(value, str):
            return 0 if value.strip().lower() in {"0", "false", "no", "n"} else 1
        return 1 if value else 0

    @property
    def target_id(self) -> str:
        """Stable local target id derived from the source identity."""
        if self.id not in (None, ""):
            return f"src_{self.id}"
        return f"src_{uuid.uuid5(uuid.NAMESPACE_URL, self.url).hex[:12]}"

    def to_target(self) -> Target:
        return Target(id=self.target_id, url=self.url, origin="external")


class TargetDiff(BaseModel):
    """Set difference between the local target list and the external source."""

    added: list[Target] = Field(default_factory=list)
    removed: list[Target] = Field(default_factory=list)
    modified: list[Target] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)
