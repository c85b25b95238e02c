"""Unit tests for cachesync.fetcher."""

from __future__ import annotations

import httpx
import pytest
import respx

from cachesync.config import OriginSettings
from cachesync.errors import CacheSyncError, ErrorCode
from cachesync.fetcher import Fetcher, build_http_client, to_cached_response
from cachesync.models.cache import AgentRequest

# ---------------------------------------------------------------------------
# build_http_client
# ---------------------------------------------------------------------------


class TestBuildHttpClient:
    async def test_client_configuration(self) -> None:
        client = build_http_client(OriginSettings(timeout_seconds=5.0))
        try:
            assert isinstance(client, httpx.AsyncClient)
            assert client.follow_redirects is True
            assert client.timeout.read == 5.0
            assert client.headers["user-agent"].startswith("cachesync/")
        finally:
            await client.aclose()


# ---------------------------------------------------------------------------
# to_cached_response
# ---------------------------------------------------------------------------


class TestToCachedResponse:
    def test_drops_transfer_headers(self) -> None:
        response = httpx.Response(
            200,
            content=b"body",
            headers={"content-type": "text/plain", "connection": "keep-alive"},
        )
        cached = to_cached_response("https://app.test/a.txt", response)
        assert cached.headers == [("content-type", "text/plain")]
        assert cached.body == b"body"
        assert cached.url == "https://app.test/a.txt"

    def test_repeated_headers_kept_apart(self) -> None:
        response = httpx.Response(
            200, headers=[("set-cookie", "a=1"), ("set-cookie", "b=2"), ("x-id", "7")]
        )
        cached = to_cached_response("https://app.test/login", response)
        assert cached.headers == [("set-cookie", "a=1"), ("set-cookie", "b=2"), ("x-id", "7")]
        assert cached.header("Set-Cookie") == "a=1"


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class TestFetch:
    async def test_successful_fetch(self) -> None:
        with respx.mock:
            respx.get("https://app.test/main.js").mock(
                return_value=httpx.Response(200, text="console.log(1)")
            )
            async with httpx.AsyncClient() as client:
                result = await Fetcher(client).fetch("https://app.test/main.js")
        assert result.ok is True
        assert result.body == b"console.log(1)"

    async def test_error_status_is_returned(self) -> None:
        with respx.mock:
            respx.get("https://app.test/missing.js").mock(return_value=httpx.Response(404))
            async with httpx.AsyncClient() as client:
                result = await Fetcher(client).fetch("https://app.test/missing.js")
        assert result.status == 404
        assert result.ok is False

    async def test_reload_bypasses_http_caches(self) -> None:
        with respx.mock:
            route = respx.get("https://app.test/index.html").mock(
                return_value=httpx.Response(200, text="<html>")
            )
            async with httpx.AsyncClient() as client:
                await Fetcher(client).fetch("https://app.test/index.html", reload=True)
        request = route.calls.last.request
        assert request.headers["cache-control"] == "no-cache"
        assert request.headers["pragma"] == "no-cache"

    async def test_plain_fetch_sends_no_cache_headers(self) -> None:
        with respx.mock:
            route = respx.get("https://app.test/index.html").mock(
                return_value=httpx.Response(200, text="<html>")
            )
            async with httpx.AsyncClient() as client:
                await Fetcher(client).fetch("https://app.test/index.html")
        assert "cache-control" not in route.calls.last.request.headers

    async def test_network_error_raises(self) -> None:
        with respx.mock:
            respx.get("https://app.test/main.js").mock(
                side_effect=httpx.ConnectError("Connection refused")
            )
            async with httpx.AsyncClient() as client:
                with pytest.raises(CacheSyncError) as exc_info:
                    await Fetcher(client).fetch("https://app.test/main.js")
        assert exc_info.value.code == ErrorCode.NETWORK_ERROR
        assert exc_info.value.recoverable is True


class TestForward:
    async def test_forwards_method_and_body(self) -> None:
        with respx.mock:
            route = respx.post("https://app.test/api/progress").mock(
                return_value=httpx.Response(201, json={"saved": True})
            )
            async with httpx.AsyncClient() as client:
                result = await Fetcher(client).forward(
                    AgentRequest(
                        url="https://app.test/api/progress",
                        method="POST",
                        headers={"host": "proxy.local", "x-lesson": "42"},
                        body=b'{"done": true}',
                    )
                )
        assert result.status == 201
        sent = route.calls.last.request
        assert sent.content == b'{"done": true}'
        assert sent.headers["x-lesson"] == "42"
        assert sent.headers["host"] == "app.test"

    async def test_forward_keeps_repeated_headers(self) -> None:
        with respx.mock:
            route = respx.get("https://app.test/session").mock(
                return_value=httpx.Response(
                    200, headers=[("set-cookie", "a=1"), ("set-cookie", "b=2")]
                )
            )
            async with httpx.AsyncClient() as client:
                result = await Fetcher(client).forward(
                    AgentRequest(
                        url="https://app.test/session",
                        headers=[("accept", "text/html"), ("x-tag", "a"), ("x-tag", "b")],
                    )
                )
        assert [value for name, value in result.headers if name == "set-cookie"] == [
            "a=1",
            "b=2",
        ]
        assert route.calls.last.request.headers.get_list("x-tag") == ["a", "b"]

    async def test_forward_network_error(self) -> None:
        with respx.mock:
            respx.get("https://app.test/other.css").mock(side_effect=httpx.ReadTimeout("slow"))
            async with httpx.AsyncClient() as client:
                with pytest.raises(CacheSyncError) as exc_info:
                    await Fetcher(client).forward(AgentRequest(url="https://app.test/other.css"))
        assert exc_info.value.code == ErrorCode.NETWORK_ERROR
