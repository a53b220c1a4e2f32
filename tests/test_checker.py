"""Health check executor tests against an in-process HTTP server."""

from __future__ import annotations

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from netguard.checker import USER_AGENTS, HealthChecker, classify_exception, classify_status
from netguard.config import Settings


def _settings(**overrides) -> Settings:
    values = {"REQUEST_TIMEOUT_SEC": 0.2, "RETRY_BACKOFF_SEC": 0, "CHECK_MAX_RETRIES": 2}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _build_app(hits: dict[str, int], agents: list[str]) -> web.Application:
    async def status(request: web.Request) -> web.Response:
        hits["status"] = hits.get("status", 0) + 1
        agents.append(request.headers.get("User-Agent", ""))
        return web.Response(status=int(request.match_info["code"]))

    async def slow(request: web.Request) -> web.Response:
        hits["slow"] = hits.get("slow", 0) + 1
        await asyncio.sleep(1)
        return web.Response(text="late")

    async def moved(request: web.Request) -> web.Response:
        raise web.HTTPFound("/status/200")

    async def flaky(request: web.Request) -> web.Response:
        hits["flaky"] = hits.get("flaky", 0) + 1
        return web.Response(status=503 if hits["flaky"] < 3 else 200)

    app = web.Application()
    app.router.add_get("/status/{code}", status)
    app.router.add_get("/slow", slow)
    app.router.add_get("/moved", moved)
    app.router.add_get("/flaky", flaky)
    return app


async def _with_server(scenario):
    hits: dict[str, int] = {}
    agents: list[str] = []
    server = TestServer(_build_app(hits, agents))
    await server.start_server()
    try:
        return await scenario(server, hits, agents)
    finally:
        await server.close()


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        (200, "active"),
        (204, "active"),
        (301, "active"),
        (401, "active"),
        (403, "active"),
        (429, "active"),
        (404, "inactive"),
        (500, "inactive"),
        (503, "inactive"),
    ],
)
def test_classify_status(code: int, expected: str) -> None:
    assert classify_status(code) == expected


def test_classify_exception_kinds() -> None:
    import aiohttp

    assert classify_exception(asyncio.TimeoutError()).error_kind == "timeout"
    assert classify_exception(aiohttp.ServerDisconnectedError()).error_kind == "abort"
    assert classify_exception(aiohttp.ClientPayloadError("bad body")).error_kind == "network"
    assert classify_exception(RuntimeError("weird")).error_kind == "unknown"


def test_reachable_codes_are_active_without_retry() -> None:
    async def scenario(server, hits, agents):
        checker = HealthChecker(_settings())
        results = {}
        for code in (200, 301, 401, 403, 429):
            results[code] = await checker.check(str(server.make_url(f"/status/{code}")))
        return results, hits["status"], agents

    results, calls, agents = asyncio.run(_with_server(scenario))
    assert all(result.status == "active" for result in results.values())
    assert results[403].status_code == 403
    # One attempt per url: active results are never retried.
    assert calls == 5
    assert all(agent in USER_AGENTS for agent in agents)


def test_server_errors_are_retried_then_reported() -> None:
    async def scenario(server, hits, agents):
        checker = HealthChecker(_settings())
        result = await checker.check(str(server.make_url("/status/500")))
        return result, hits["status"]

    result, calls = asyncio.run(_with_server(scenario))
    assert result.status == "inactive"
    assert result.status_code == 500
    assert result.error_kind is None
    assert calls == 3


def test_retry_recovers_flaky_target() -> None:
    async def scenario(server, hits, agents):
        result = await HealthChecker(_settings()).check(str(server.make_url("/flaky")))
        return result, hits["flaky"]

    result, calls = asyncio.run(_with_server(scenario))
    assert result.status == "active"
    assert calls == 3


def test_max_retries_override() -> None:
    async def scenario(server, hits, agents):
        result = await HealthChecker(_settings()).check(str(server.make_url("/status/404")), max_retries=0)
        return result, hits["status"]

    result, calls = asyncio.run(_with_server(scenario))
    assert result.status_code == 404
    assert calls == 1


def test_timeout_is_tagged() -> None:
    async def scenario(server, hits, agents):
        result = await HealthChecker(_settings(CHECK_MAX_RETRIES=1)).check(str(server.make_url("/slow")))
        return result, hits["slow"]

    result, calls = asyncio.run(_with_server(scenario))
    assert result.status == "inactive"
    assert result.error_kind == "timeout"
    assert result.error_message == "Request timeout"
    assert calls == 2


def test_redirect_is_followed() -> None:
    async def scenario(server, hits, agents):
        return await HealthChecker(_settings()).check(str(server.make_url("/moved")))

    result = asyncio.run(_with_server(scenario))
    assert result.status == "active"
    assert result.status_code == 200
    assert result.redirected is True
    assert result.redirect_url is not None and result.redirect_url.endswith("/status/200")


def test_connection_refused_is_network_error() -> None:
    async def scenario():
        server = TestServer(web.Application())
        await server.start_server()
        url = str(server.make_url("/"))
        await server.close()
        return await HealthChecker(_settings(CHECK_MAX_RETRIES=0)).check(url)

    result = asyncio.run(scenario())
    assert result.status == "inactive"
    assert result.error_kind == "network"
    assert result.error_message.startswith("Network error")
