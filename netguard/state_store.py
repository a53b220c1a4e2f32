from __future__ import annotations

"""Durable key/value snapshot of engine state with debounced write-behind."""

import asyncio
import json
import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from .models import Notification, ReceiverConfig, RunSummary, SchedulerState, ServiceStats, Target


class StateKey(str, Enum):
    """Logical keys; each one is persisted independently as its own file."""

    TARGETS = "targets"
    RECEIVER = "receiver"
    INTERVAL = "interval_minutes"
    LAST_SUMMARY = "last_summary"
    SUMMARY_HISTORY = "summary_history"
    LAST_CHECK_AT = "last_check_at"
    ENABLED = "enabled"
    NEXT_RUN_AT = "next_run_at"
    SOURCE_ENDPOINT = "source_endpoint"
    STATS = "stats"
    NOTIFICATIONS = "notifications"


_ADAPTERS: dict[StateKey, TypeAdapter[Any]] = {
    StateKey.TARGETS: TypeAdapter(list[Target]),
    StateKey.RECEIVER: TypeAdapter(ReceiverConfig),
    StateKey.INTERVAL: TypeAdapter(int),
    StateKey.LAST_SUMMARY: TypeAdapter(RunSummary | None),
    StateKey.SUMMARY_HISTORY: TypeAdapter(list[RunSummary]),
    StateKey.LAST_CHECK_AT: TypeAdapter(datetime | None),
    StateKey.ENABLED: TypeAdapter(bool),
    StateKey.NEXT_RUN_AT: TypeAdapter(datetime | None),
    StateKey.SOURCE_ENDPOINT: TypeAdapter(str),
    StateKey.STATS: TypeAdapter(ServiceStats),
    StateKey.NOTIFICATIONS: TypeAdapter(list[Notification]),
}


def _defaults(default_interval: int) -> dict[StateKey, Any]:
    return {
        StateKey.TARGETS: [],
        StateKey.RECEIVER: ReceiverConfig(),
        StateKey.INTERVAL: default_interval,
        StateKey.LAST_SUMMARY: None,
        StateKey.SUMMARY_HISTORY: [],
        StateKey.LAST_CHECK_AT: None,
        StateKey.ENABLED: False,
        StateKey.NEXT_RUN_AT: None,
        StateKey.SOURCE_ENDPOINT: "",
        StateKey.STATS: ServiceStats(),
        StateKey.NOTIFICATIONS: [],
    }


class StateStore:
    """In-memory cache of every key, flushed to `<state_dir>/<key>.json`.

    Reads are served from the cache, which is filled synchronously on the
    first access (cold start). Writes update the cache immediately and are
    coalesced into one disk write per key after `flush_delay_sec`. A file
    that fails to parse falls back to the key's default value, so a crash
    mid-write degrades to slightly stale state rather than a boot failure.
    """

    def __init__(self, state_dir: str | Path, *, flush_delay_sec: float = 0.5, default_interval: int = 60) -> None:
        self.state_dir = Path(state_dir)
        self.flush_delay_sec = flush_delay_sec
        self._defaults = _defaults(default_interval)
        self._cache: dict[StateKey, Any] = {}
        self._loaded = False
        self._dirty: set[StateKey] = set()
        self._flush_handle: asyncio.TimerHandle | None = None
        self.write_count = 0

    def _path(self, key: StateKey) -> Path:
        return self.state_dir / f"{key.value}.json"

    def load(self) -> None:
        """Read every key from disk; missing or corrupt keys take defaults."""
        for key in StateKey:
            self._cache[key] = self._read_key(key)
        self._loaded = True

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _read_key(self, key: StateKey) -> Any:
        path = self._path(key)
        if not path.exists():
            return self._copy_default(key)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return _ADAPTERS[key].validate_python(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("state key {} unreadable, using default: {}", key.value, exc)
            return self._copy_default(key)

    def _copy_default(self, key: StateKey) -> Any:
        value = self._defaults[key]
        if isinstance(value, list):
            return []
        if hasattr(value, "model_copy"):
            return value.model_copy(deep=True)
        return value

    def get(self, key: StateKey) -> Any:
        self._ensure_loaded()
        return self._cache[key]

    def has_persisted(self, key: StateKey) -> bool:
        return self._path(key).exists()

    def set(self, key: StateKey, value: Any) -> None:
        """Update the cache and schedule a debounced write for this key."""
        self._ensure_loaded()
        self._cache[key] = value
        self._dirty.add(key)
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (CLI one-shot commands): write through.
            self.flush()
            return
        if self._flush_handle is not None and not self._flush_handle.cancelled():
            return
        self._flush_handle = loop.call_later(self.flush_delay_sec, self.flush)

    @property
    def has_pending_writes(self) -> bool:
        return bool(self._dirty)

    def flush(self) -> None:
        """Write every dirty key now; safe to call repeatedly."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if not self._dirty:
            return
        self.state_dir.mkdir(parents=True, exist_ok=True)
        for key in sorted(self._dirty, key=lambda item: item.value):
            payload = _ADAPTERS[key].dump_python(self._cache[key], mode="json")
            path = self._path(key)
            tmp = path.with_suffix(".tmp")
            try:
                tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
                os.replace(tmp, path)
            except OSError as exc:
                logger.error("state key {} write failed: {}", key.value, exc)
                continue
            self.write_count += 1
        self._dirty.clear()

    def clear_all(self) -> None:
        """Reset every key to its default and persist the reset."""
        self._ensure_loaded()
        for key in StateKey:
            self._cache[key] = self._copy_default(key)
            self._dirty.add(key)
        self.flush()

    # Typed accessors.

    def get_targets(self) -> list[Target]:
        return [item.model_copy(deep=True) for item in self.get(StateKey.TARGETS)]

    def set_targets(self, targets: list[Target]) -> None:
        self.set(StateKey.TARGETS, [item.model_copy(deep=True) for item in targets])

    def get_receiver(self) -> ReceiverConfig:
        return self.get(StateKey.RECEIVER)

    def set_receiver(self, receiver: ReceiverConfig) -> None:
        self.set(StateKey.RECEIVER, receiver)

    def get_stats(self) -> ServiceStats:
        return self.get(StateKey.STATS)

    def save_stats(self, stats: ServiceStats) -> None:
        self.set(StateKey.STATS, stats)

    def get_notifications(self) -> list[Notification]:
        return list(self.get(StateKey.NOTIFICATIONS))

    def set_notifications(self, notifications: list[Notification]) -> None:
        self.set(StateKey.NOTIFICATIONS, list(notifications))

    def load_scheduler_state(self) -> SchedulerState:
        return SchedulerState(
            is_enabled=self.get(StateKey.ENABLED),
            interval_minutes=self.get(StateKey.INTERVAL),
            next_run_at=self.get(StateKey.NEXT_RUN_AT),
            last_run_at=self.get(StateKey.LAST_CHECK_AT),
        )

    def save_scheduler_state(self, state: SchedulerState) -> None:
        self.set(StateKey.ENABLED, state.is_enabled)
        self.set(StateKey.INTERVAL, state.interval_minutes)
        self.set(StateKey.NEXT_RUN_AT, state.next_run_at)
        self.set(StateKey.LAST_CHECK_AT, state.last_run_at)

    def record_summary(self, summary: RunSummary, history_cap: int) -> None:
        """Keep the summary as last delivery and in the bounded history."""
        self.set(StateKey.LAST_SUMMARY, summary)
        history = [summary, *self.get(StateKey.SUMMARY_HISTORY)]
        self.set(StateKey.SUMMARY_HISTORY, history[: max(history_cap, 1)])
