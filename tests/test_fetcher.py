from __future__ import annotations

import asyncio
import time

import httpx

from auditor.services.fetcher import Fetcher, FetchResult


def test_fetch_returns_body_and_identity_header() -> None:
    seen_agents: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen_agents.append(request.headers.get("user-agent", ""))
        return httpx.Response(
            status_code=200,
            headers={"content-type": "text/html; charset=utf-8"},
            text="<html><title>Hi</title></html>",
            request=request,
        )

    async def run() -> FetchResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = Fetcher(user_agent="AuditBot/1.0", client=client)
            return await fetcher.fetch("https://example.com/", 5000)

    result = asyncio.run(run())
    assert result.ok is True
    assert result.status_code == 200
    assert result.content_type.startswith("text/html")
    assert "<title>Hi</title>" in result.body
    assert result.error is None
    assert seen_agents == ["AuditBot/1.0"]


def test_fetch_never_raises_on_transport_errors() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def run() -> FetchResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await Fetcher(client=client).fetch("https://down.example.com/", 5000)

    result = asyncio.run(run())
    assert result.ok is False
    assert result.status_code == 0
    assert result.body == ""
    assert result.error is not None and result.error.startswith("ConnectError")


def test_fetch_reports_http_errors_as_not_ok() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=503, text="busy", request=request)

    async def run() -> FetchResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await Fetcher(client=client).fetch("https://example.com/", 5000)

    result = asyncio.run(run())
    assert result.ok is False
    assert result.status_code == 503


def test_fetch_truncates_large_bodies() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, content=b"a" * 5000, request=request)

    async def run() -> FetchResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await Fetcher(max_body_bytes=100, client=client).fetch("https://example.com/big", 5000)

    assert len(asyncio.run(run()).body) == 100


def test_fetch_stops_reading_at_the_body_cap() -> None:
    sent: list[int] = []

    async def body():
        for index in range(50):
            sent.append(index)
            yield b"b" * 64

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, content=body(), request=request)

    async def run() -> FetchResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await Fetcher(max_body_bytes=200, client=client).fetch("https://example.com/stream", 5000)

    result = asyncio.run(run())
    assert result.ok is True
    assert len(result.body) == 200
    assert len(sent) < 50


def test_fetch_enforces_a_total_deadline_on_slow_bodies() -> None:
    async def trickle():
        for _ in range(20):
            await asyncio.sleep(0.2)
            yield b"x"

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, content=trickle(), request=request)

    async def run() -> FetchResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await Fetcher(client=client).fetch("https://slow.example.com/", 300)

    started = time.perf_counter()
    result = asyncio.run(run())
    assert time.perf_counter() - started < 2.0
    assert result.ok is False
    assert result.status_code == 0
    assert result.error is not None and result.error.startswith("TimeoutError")


def test_fetch_turns_unexpected_errors_into_failed_results() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("transport blew up")

    async def run() -> FetchResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await Fetcher(client=client).fetch("https://example.com/", 5000)

    result = asyncio.run(run())
    assert result.status_code == 0
    assert result.error == "RuntimeError: transport blew up"
