from __future__ import annotations

"""Reachability probe for one URL with retry, timeout and outcome classification."""

import asyncio
import random

import aiohttp
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_incrementing

from .config import Settings
from .models import CheckResult, ProbeStatus

# Rotated per attempt so trivial bot filters do not block the probe.
USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Linux; Android 10; SM-G973F) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

_BASE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

# Reachable but access-restricted or rate-limited still counts as up.
_REACHABLE_CLIENT_ERRORS = frozenset({401, 403, 429})


def classify_status(status_code: int) -> ProbeStatus:
    """Map an HTTP status code to active/inactive."""
    if 200 <= status_code < 400 or status_code in _REACHABLE_CLIENT_ERRORS:
        return "active"
    return "inactive"


def classify_exception(exc: BaseException) -> CheckResult:
    """Turn a transport exception into a tagged inactive result."""
    if isinstance(exc, asyncio.TimeoutError):
        return CheckResult.failure("timeout", "Request timeout")
    if isinstance(exc, aiohttp.ServerDisconnectedError):
        return CheckResult.failure("abort", "Connection aborted by server")
    if isinstance(exc, aiohttp.ClientError):
        return CheckResult.failure("network", f"Network error: {exc}")
    return CheckResult.failure("unknown", str(exc) or exc.__class__.__name__)


def _is_failure(result: CheckResult | None) -> bool:
    return result is None or not result.ok


class HealthChecker:
    """Probe URLs one at a time; never raises for expected failures."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.timeout = aiohttp.ClientTimeout(total=settings.REQUEST_TIMEOUT_SEC)

    def _build_headers(self) -> dict[str, str]:
        return {**_BASE_HEADERS, "User-Agent": random.choice(USER_AGENTS)}

    async def _probe_once(self, session: aiohttp.ClientSession, url: str) -> CheckResult:
        """Issue one GET; the client timeout aborts the request and frees its connection."""
        try:
            async with session.get(
                url,
                timeout=self.timeout,
                headers=self._build_headers(),
                allow_redirects=True,
            ) as response:
                final_url = str(response.url)
                return CheckResult(
                    status=classify_status(response.status),
                    status_code=response.status,
                    status_text=response.reason,
                    redirected=bool(response.history),
                    redirect_url=final_url if final_url != url else None,
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return classify_exception(exc)

    async def check(
        self,
        url: str,
        max_retries: int | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> CheckResult:
        """Probe url with up to max_retries extra attempts and linear backoff."""
        retries = self.settings.CHECK_MAX_RETRIES if max_retries is None else max(max_retries, 0)
        backoff = self.settings.RETRY_BACKOFF_SEC
        if session is None:
            async with aiohttp.ClientSession() as own_session:
                return await self._check_with_session(own_session, url, retries, backoff)
        return await self._check_with_session(session, url, retries, backoff)

    async def _check_with_session(
        self,
        session: aiohttp.ClientSession,
        url: str,
        retries: int,
        backoff: float,
    ) -> CheckResult:
        result: CheckResult | None = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_incrementing(start=backoff, increment=backoff),
            retry=retry_if_result(_is_failure),
            retry_error_callback=lambda state: state.outcome.result(),
        ):
            with attempt:
                result = await self._probe_once(session, url)
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(result)
        return result or CheckResult.failure("unknown", "Unknown error")
