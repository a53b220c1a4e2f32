from __future__ import annotations

"""External target list: fetch, normalize, diff and merge into local targets."""

import asyncio
import json
from typing import Any, Protocol

import aiohttp
import pandas as pd
from loguru import logger
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from .config import Settings
from .errors import SourceFormatError
from .models import ReceiverConfig, SourceItem, Target, TargetDiff, is_valid_url

_SOURCE_COLUMNS = ["id", "callback_name", "url", "callback_url", "is_active"]


class TargetSource(Protocol):
    """Source abstraction to support test doubles and real endpoints."""

    async def fetch(self) -> list[SourceItem]: ...


def parse_payload(payload: Any) -> list[dict[str, Any]]:
    """Accept a bare array or a `{data: [...]}` wrapper."""
    if isinstance(payload, dict):
        items = payload.get("data")
        if items is None:
            raise SourceFormatError(f"source response has no data field (status={payload.get('status')!r})")
    else:
        items = payload
    if not isinstance(items, list):
        raise SourceFormatError(f"source data must be a list, got {type(items).__name__}")
    bad = [item for item in items if not isinstance(item, dict)]
    if bad:
        raise SourceFormatError(f"source data contains {len(bad)} non-object rows")
    return items


def normalize_items(items: list[dict[str, Any]], callback_name: str = "") -> list[SourceItem]:
    """Drop inactive rows, invalid urls, other groups and duplicate urls."""
    parsed: list[SourceItem] = []
    for raw in items:
        try:
            parsed.append(SourceItem.model_validate(raw))
        except ValidationError as exc:
            logger.warning("source row skipped: {} ({})", raw, exc.error_count())
    if not parsed:
        return []

    # object dtype keeps integer ids intact next to missing ones.
    frame = pd.DataFrame([item.model_dump(include=set(_SOURCE_COLUMNS)) for item in parsed], dtype=object)
    frame = frame[frame["is_active"] == 1]
    frame = frame[frame["url"].map(is_valid_url).astype(bool)]
    group = callback_name.strip()
    if group:
        frame = frame[frame["callback_name"] == group]
    frame = frame.drop_duplicates(subset=["url"], keep="first")
    return [SourceItem.model_validate(record) for record in frame.to_dict(orient="records")]


def group_receiver(items: list[SourceItem], callback_name: str = "") -> ReceiverConfig | None:
    """Receiver advertised by the group, taken from the first valid callback_url."""
    for item in items:
        if is_valid_url(item.callback_url):
            return ReceiverConfig(name=callback_name or item.callback_name, url=item.callback_url)
    return None


def _incoming_targets(current: list[Target], items: list[SourceItem]) -> list[Target]:
    manual_urls = {target.url for target in current if target.origin == "manual"}
    return [item.to_target() for item in items if item.url not in manual_urls]


def diff_targets(current: list[Target], items: list[SourceItem]) -> TargetDiff:
    """Compare external targets by id and url; manual targets never count as removed."""
    external = {target.id: target for target in current if target.origin == "external"}
    incoming = {target.id: target for target in _incoming_targets(current, items)}
    diff = TargetDiff()
    for target_id, target in incoming.items():
        existing = external.get(target_id)
        if existing is None:
            diff.added.append(target)
        elif existing.url != target.url:
            diff.modified.append(target)
    diff.removed = [target for target_id, target in external.items() if target_id not in incoming]
    return diff


def merge_targets(current: list[Target], items: list[SourceItem]) -> list[Target]:
    """Keep manual targets, replace external ones, keep history where the url is unchanged."""
    external = {target.id: target for target in current if target.origin == "external"}
    merged = [target for target in current if target.origin == "manual"]
    for target in _incoming_targets(current, items):
        existing = external.get(target.id)
        merged.append(existing if existing is not None and existing.url == target.url else target)
    return merged


class HttpTargetSource:
    """Fetch the target list from an HTTP endpoint with bounded retries."""

    def __init__(self, settings: Settings, endpoint: str, callback_name: str = "") -> None:
        self.settings = settings
        self.endpoint = endpoint
        self.callback_name = callback_name
        self.timeout = aiohttp.ClientTimeout(total=settings.SOURCE_TIMEOUT_SEC)

    async def _fetch_json(self) -> Any:
        async with aiohttp.ClientSession() as session:
            async with session.get(
                self.endpoint,
                timeout=self.timeout,
                headers={"Accept": "application/json", "Cache-Control": "no-cache"},
            ) as response:
                response.raise_for_status()
                text = await response.text()
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise SourceFormatError(f"source returned invalid json: {exc}") from exc

    async def fetch(self) -> list[SourceItem]:
        """Fetch, parse and normalize; transport errors are retried, format errors are not."""
        backoff = self.settings.RETRY_BACKOFF_SEC
        payload: Any = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.SOURCE_RETRY_ATTEMPTS),
            wait=wait_incrementing(start=backoff, increment=backoff),
            retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
            reraise=True,
        ):
            with attempt:
                payload = await self._fetch_json()
        items = normalize_items(parse_payload(payload), self.callback_name)
        logger.info("source fetched {} active targets from {}", len(items), self.endpoint)
        return items
