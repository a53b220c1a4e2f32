from __future__ import annotations

import asyncio

from aiohttp import web
from aiohttp.test_utils import TestServer

from netguard.config import Settings
from netguard.dispatcher import CallbackDispatcher, build_payload, describe_network
from netguard.models import ReceiverConfig, RunSummary, TargetResult
from netguard.state_store import StateKey, StateStore


def _summary(is_background: bool = False) -> RunSummary:
    return RunSummary.from_results(
        [
            TargetResult(url="https://a.example", status="active", status_code=200, response_time_ms=40),
            TargetResult(url="https://b.example", status="inactive", status_code=500, response_time_ms=55),
            TargetResult(url="https://c.example", status="inactive", error="Request timeout", response_time_ms=200),
        ],
        is_background=is_background,
        trigger="scheduled",
    )


def _dispatcher(tmp_path, **overrides) -> tuple[CallbackDispatcher, StateStore]:
    values = {"DISPATCH_TIMEOUT_SEC": 0.3, "DEVICE_ID": "device-1"}
    values.update(overrides)
    store = StateStore(tmp_path)
    return CallbackDispatcher(Settings(_env_file=None, **values), store), store


def _receiver_app(received: list[dict], status: int = 200, delay: float = 0) -> web.Application:
    async def hook(request: web.Request) -> web.Response:
        received.append(await request.json())
        if delay:
            await asyncio.sleep(delay)
        return web.json_response({"ok": status < 300}, status=status)

    app = web.Application()
    app.router.add_post("/hook", hook)
    return app


def _dispatch_to(tmp_path, app: web.Application, summary: RunSummary):
    dispatcher, store = _dispatcher(tmp_path)

    async def scenario():
        server = TestServer(app)
        await server.start_server()
        try:
            receiver = ReceiverConfig(name="ops", url=str(server.make_url("/hook")))
            return await dispatcher.dispatch(summary, receiver)
        finally:
            await server.close()

    return asyncio.run(scenario()), dispatcher, store


def test_empty_receiver_is_a_no_op(tmp_path, monkeypatch) -> None:
    dispatcher, store = _dispatcher(tmp_path)

    async def forbidden(*args, **kwargs):
        raise AssertionError("no network call expected")

    monkeypatch.setattr(dispatcher, "_post", forbidden)
    for receiver in (ReceiverConfig(), ReceiverConfig(name="x", url="not a url")):
        outcome = asyncio.run(dispatcher.dispatch(_summary(), receiver))
        assert outcome.status == "skipped"
        assert outcome.ok is True

    stats = store.get_stats()
    assert (stats.successful_deliveries, stats.failed_deliveries, stats.consecutive_failures) == (0, 0, 0)
    assert store.get(StateKey.LAST_SUMMARY).delivered is False


def test_delivered_payload_and_stats(tmp_path) -> None:
    received: list[dict] = []
    summary = _summary(is_background=True)
    outcome, dispatcher, store = _dispatch_to(tmp_path, _receiver_app(received), summary)

    assert outcome.status == "delivered"
    assert len(received) == 1
    payload = received[0]
    assert payload == dispatcher.last_payload
    assert payload["checkType"] == "background_batch"
    assert payload["isBackground"] is True
    assert payload["runContext"] == {"trigger": "scheduled"}
    assert payload["summary"] == {"total": 3, "active": 1, "inactive": 2}
    assert payload["callbackName"] == "ops"
    assert payload["device"]["id"] == "device-1"
    assert payload["network"]["isConnected"] is True
    assert payload["urls"][2] == {
        "url": "https://c.example",
        "status": "inactive",
        "error": "Request timeout",
        "responseTime": 200,
        "statusCode": None,
    }

    stats = store.get_stats()
    assert stats.successful_deliveries == 1
    assert stats.failed_deliveries == 0
    assert summary.delivered is True
    assert len(store.get(StateKey.SUMMARY_HISTORY)) == 1


def test_rejected_delivery_counts_failure_once(tmp_path) -> None:
    received: list[dict] = []
    outcome, _, store = _dispatch_to(tmp_path, _receiver_app(received, status=500), _summary())

    assert outcome.status == "failed"
    assert outcome.error_kind == "rejected"
    assert outcome.status_code == 500
    # Never retried within the run.
    assert len(received) == 1
    stats = store.get_stats()
    assert (stats.successful_deliveries, stats.failed_deliveries, stats.consecutive_failures) == (0, 1, 1)


def test_timeout_delivery(tmp_path) -> None:
    received: list[dict] = []
    outcome, _, store = _dispatch_to(tmp_path, _receiver_app(received, delay=1), _summary())

    assert outcome.status == "failed"
    assert outcome.error_kind == "timeout"
    assert store.get_stats().failed_deliveries == 1


def test_success_resets_consecutive_failures(tmp_path) -> None:
    received: list[dict] = []
    dispatcher, store = _dispatcher(tmp_path)
    stats = store.get_stats()
    stats.consecutive_failures = 2
    store.save_stats(stats)

    async def scenario():
        server = TestServer(_receiver_app(received))
        await server.start_server()
        try:
            return await dispatcher.dispatch(_summary(), ReceiverConfig(url=str(server.make_url("/hook"))))
        finally:
            await server.close()

    asyncio.run(scenario())
    assert store.get_stats().consecutive_failures == 0


def test_network_descriptor_flags_offline_host() -> None:
    offline = RunSummary.from_results(
        [TargetResult(url="https://a.example", status="inactive", error="Network error")],
        is_background=False,
    )
    assert describe_network(offline)["isConnected"] is False
    payload = build_payload(offline, ReceiverConfig(name="n"), device={"id": "d"}, network=describe_network(offline))
    assert payload["checkType"] == "foreground_batch"
