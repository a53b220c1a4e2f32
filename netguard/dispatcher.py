from __future__ import annotations

"""Batch callback dispatcher: one summary POST per run, never retried in-run."""

import asyncio
import platform
import socket
import sys
import uuid
from typing import Any

import aiohttp
from loguru import logger

from .config import Settings
from .models import DeliveryOutcome, ReceiverConfig, RunSummary
from .state_store import StateStore

DISPATCH_USER_AGENT = "NetGuard/2.0"


def describe_device(device_id: str | None = None) -> dict[str, Any]:
    """Static runtime descriptor attached to every payload."""
    hostname = socket.gethostname()
    return {
        "id": device_id or uuid.uuid5(uuid.NAMESPACE_DNS, hostname).hex,
        "model": platform.machine() or "unknown",
        "brand": platform.system() or "unknown",
        "platform": sys.platform,
        "version": platform.release(),
        "runtime": f"python {platform.python_version()}",
    }


def describe_network(summary: RunSummary) -> dict[str, Any]:
    """Best-effort connectivity descriptor derived from the run itself."""
    network_errors = sum(
        1 for item in summary.results if item.status_code is None and item.status == "inactive"
    )
    # No response at all from any target usually means the host itself is offline.
    connected = summary.total_count == 0 or network_errors < summary.total_count
    return {
        "type": "host",
        "hostname": socket.gethostname(),
        "isConnected": connected,
    }


def build_payload(
    summary: RunSummary,
    receiver: ReceiverConfig,
    *,
    device: dict[str, Any],
    network: dict[str, Any],
) -> dict[str, Any]:
    """Build the JSON body posted to the receiver."""
    return {
        "checkType": "background_batch" if summary.is_background else "foreground_batch",
        "timestamp": summary.timestamp.isoformat(),
        "isBackground": summary.is_background,
        "runContext": {"trigger": summary.trigger},
        "summary": {
            "total": summary.total_count,
            "active": summary.active_count,
            "inactive": summary.inactive_count,
        },
        "urls": [
            {
                "url": item.url,
                "status": item.status,
                "error": item.error,
                "responseTime": item.response_time_ms,
                "statusCode": item.status_code,
            }
            for item in summary.results
        ],
        "network": network,
        "device": device,
        "callbackName": receiver.name,
    }


class CallbackDispatcher:
    """Post run summaries and keep delivery statistics."""

    def __init__(self, settings: Settings, store: StateStore) -> None:
        self.settings = settings
        self.store = store
        self.timeout = aiohttp.ClientTimeout(total=settings.DISPATCH_TIMEOUT_SEC)
        self.device = describe_device(settings.DEVICE_ID)
        self.last_payload: dict[str, Any] | None = None

    async def _post(self, url: str, payload: dict[str, Any]) -> DeliveryOutcome:
        headers = {"Content-Type": "application/json", "User-Agent": DISPATCH_USER_AGENT}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, json=payload, headers=headers, timeout=self.timeout) as response:
                    if 200 <= response.status < 300:
                        return DeliveryOutcome(status="delivered", status_code=response.status)
                    return DeliveryOutcome(
                        status="failed",
                        error_kind="rejected",
                        status_code=response.status,
                        message=f"receiver answered {response.status} {response.reason or ''}".strip(),
                    )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            return DeliveryOutcome(status="failed", error_kind="timeout", message="callback timeout")
        except aiohttp.ClientError as exc:
            return DeliveryOutcome(status="failed", error_kind="transport", message=str(exc) or exc.__class__.__name__)
        except Exception as exc:
            logger.exception("callback exception for {}: {}", url, exc)
            return DeliveryOutcome(status="failed", error_kind="transport", message=str(exc) or exc.__class__.__name__)

    async def dispatch(self, summary: RunSummary, receiver: ReceiverConfig) -> DeliveryOutcome:
        """Deliver summary once; record outcome and counters exactly once."""
        if not receiver.is_valid:
            if receiver.url:
                logger.warning("receiver url invalid, dispatch skipped: {}", receiver.url)
            summary.delivered = False
            self.store.record_summary(summary, self.settings.MAX_SUMMARY_HISTORY)
            return DeliveryOutcome(status="skipped", message="receiver not configured")

        payload = build_payload(summary, receiver, device=self.device, network=describe_network(summary))
        self.last_payload = payload
        outcome = await self._post(receiver.url, payload)

        summary.delivered = outcome.status == "delivered"
        self.store.record_summary(summary, self.settings.MAX_SUMMARY_HISTORY)
        stats = self.store.get_stats()
        if summary.delivered:
            stats.successful_deliveries += 1
            stats.consecutive_failures = 0
            logger.info("callback delivered to {} ({})", receiver.url, outcome.status_code)
        else:
            stats.failed_deliveries += 1
            stats.consecutive_failures += 1
            logger.warning(
                "callback to {} failed kind={} message={} consecutive={}",
                receiver.url,
                outcome.error_kind,
                outcome.message,
                stats.consecutive_failures,
            )
        self.store.save_stats(stats)
        return outcome
