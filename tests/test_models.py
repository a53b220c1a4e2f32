from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from netguard.errors import ConfigInvalid
from netguard.models import (
    CheckResult,
    RunSummary,
    SchedulerState,
    ServiceStats,
    SourceItem,
    Target,
    TargetResult,
    is_valid_url,
    require_valid_url,
)


def _ts(minute: int) -> datetime:
    return datetime(2026, 3, 1, 12, minute, tzinfo=timezone.utc)


def test_history_is_bounded_ring_buffer() -> None:
    target = Target(url="https://example.com")
    for minute in range(25):
        result = CheckResult(status="active", status_code=200) if minute % 2 == 0 else CheckResult.failure("timeout", "t")
        target.record_check(result, response_time_ms=minute, max_history=20, now=_ts(minute))

    assert len(target.history) == 20
    # Oldest five were evicted in order.
    assert target.history[0].timestamp == _ts(5)
    assert target.history[-1].timestamp == _ts(24)
    assert target.success_count == 13
    assert target.error_count == 12
    assert target.status == "active"
    assert target.last_checked_at == _ts(24)


def test_record_check_keeps_error_details() -> None:
    target = Target(url="https://example.com")
    record = target.record_check(
        CheckResult.failure("network", "Network error: refused"),
        response_time_ms=12,
        max_history=10,
    )
    assert record.status == "inactive"
    assert record.error_kind == "network"
    assert record.redirected is None
    assert target.status == "inactive"


def test_target_rejects_non_http_url() -> None:
    with pytest.raises(ValidationError):
        Target(url="ftp://example.com/file")
    with pytest.raises(ValidationError):
        Target(url="example.com")


def test_url_helpers() -> None:
    assert is_valid_url("http://localhost:8080/health")
    assert is_valid_url("https://example.com")
    assert not is_valid_url("")
    assert not is_valid_url(None)
    assert not is_valid_url("mailto:someone@example.com")
    assert require_valid_url("  https://example.com/x ") == "https://example.com/x"
    with pytest.raises(ConfigInvalid):
        require_valid_url("not a url")


def test_run_summary_counts() -> None:
    results = [
        TargetResult(url="https://a.example", status="active", status_code=200),
        TargetResult(url="https://b.example", status="inactive", status_code=500),
        TargetResult(url="https://c.example", status="inactive", error="Request timeout"),
    ]
    summary = RunSummary.from_results(results, is_background=True, trigger="catch_up", now=_ts(0))
    assert (summary.total_count, summary.active_count, summary.inactive_count) == (3, 1, 2)
    assert summary.is_background is True
    assert summary.trigger == "catch_up"
    assert summary.delivered is False


def test_scheduler_state_countdown_is_derived() -> None:
    state = SchedulerState(is_enabled=True, interval_minutes=15, next_run_at=_ts(30))
    assert state.seconds_until_next(_ts(20)) == 600
    assert state.seconds_until_next(_ts(45)) == 0
    assert state.interval == timedelta(minutes=15)
    assert SchedulerState(is_enabled=False, next_run_at=_ts(30)).seconds_until_next(_ts(0)) is None


def test_service_stats_uptime_accumulates() -> None:
    stats = ServiceStats(total_uptime_seconds=100, started_at=_ts(0))
    assert stats.uptime_seconds(_ts(2)) == 220
    assert ServiceStats(total_uptime_seconds=7).uptime_seconds(_ts(2)) == 7


def test_source_item_parsing() -> None:
    item = SourceItem.model_validate(
        {"id": 7, "callback_name": " team ", "url": "https://a.example", "is_active": "0", "extra": True}
    )
    assert item.callback_name == "team"
    assert item.is_active == 0
    assert item.target_id == "src_7"

    anonymous = SourceItem.model_validate({"url": "https://b.example", "callback_url": None})
    assert anonymous.callback_url == ""
    assert anonymous.is_active == 1
    assert anonymous.target_id.startswith("src_")
    assert anonymous.target_id == SourceItem(url="https://b.example").target_id

    target = item.to_target()
    assert target.id == "src_7"
    assert target.origin == "external"
