"""Tests for the REST transport against an in-process httpx transport."""

from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest

from bitvavo_client.errors import ApiError, ConfigurationError, RateLimitExceeded, TransportError
from bitvavo_client.exchanges.rest import RestTransport
from bitvavo_client.framework.rate_governor import RateLimitGovernor
from bitvavo_client.framework.signer import create_signature
from bitvavo_client.models import Credentials

BASE_URL = "https://api.bitvavo.com/v2"
CREDS = Credentials(key="key", secret="secret")


def _transport(handler, credentials: Credentials = CREDS, governor: RateLimitGovernor | None = None, **kw):
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return RestTransport(credentials, governor or RateLimitGovernor(), base_url=BASE_URL, client=client, **kw)


def _run(transport: RestTransport, *args, **kwargs):
    async def _go():
        try:
            return await transport.execute(*args, **kwargs)
        finally:
            await transport.aclose()

    return asyncio.run(_go())


class TestPublic:
    def test_unsigned_request_without_credentials(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"time": 1539180275424})

        result = _run(_transport(handler, credentials=Credentials()), "GET", "/time")

        assert result.ok
        assert result.unwrap() == {"time": 1539180275424}
        assert seen[0].url.path == "/v2/time"
        assert "Bitvavo-Access-Signature" not in seen[0].headers

    def test_headers_feed_governor(self) -> None:
        governor = RateLimitGovernor()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[], headers={"Bitvavo-Ratelimit-Remaining": "998"})

        _run(_transport(handler, governor=governor), "GET", "/markets")
        assert governor.remaining_budget() == 998

    def test_query_encoded_and_signed(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        _run(_transport(handler), "GET", "/BTC-EUR/book", query={"depth": 5, "skip": None})

        request = seen[0]
        assert request.url.params["depth"] == "5"
        assert "skip" not in request.url.params
        ts = int(request.headers["Bitvavo-Access-Timestamp"])
        expected = create_signature("secret", ts, "GET", "/BTC-EUR/book?depth=5")
        assert request.headers["Bitvavo-Access-Signature"] == expected
        assert request.headers["Bitvavo-Access-Key"] == "key"
        assert request.headers["Bitvavo-Access-Window"] == "10000"


class TestPrivate:
    def test_missing_credentials_no_io(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        result = _run(_transport(handler, credentials=Credentials()), "GET", "/account", private=True)

        assert calls == []
        assert isinstance(result.error, ConfigurationError)
        with pytest.raises(ConfigurationError):
            result.unwrap()

    def test_json_body_signed(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"orderId": "1"})

        body = {"market": "BTC-EUR", "side": "buy", "orderType": "limit"}
        result = _run(_transport(handler), "post", "/order", body=body, private=True)

        request = seen[0]
        text = request.content.decode()
        assert text == '{"market":"BTC-EUR","side":"buy","orderType":"limit"}'
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        ts = int(request.headers["Bitvavo-Access-Timestamp"])
        assert request.headers["Bitvavo-Access-Signature"] == create_signature("secret", ts, "POST", "/order", text)
        assert result.payload == {"orderId": "1"}


class TestErrors:
    def test_ban_in_success_body_feeds_governor(self) -> None:
        governor = RateLimitGovernor()
        expiry = int(time.time() * 1000) + 60_000

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"errorCode": 105, "error": f"Rate limit exceeded. The ban expires at {expiry}."},
            )

        result = _run(_transport(handler, governor=governor), "GET", "/time")

        assert isinstance(result.error, RateLimitExceeded)
        assert result.error.reset_at_ms == expiry
        assert governor.is_exhausted()
        assert governor.state.reset_at_ms == expiry

    def test_api_error_code(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"errorCode": 205, "error": "Invalid parameter."})

        result = _run(_transport(handler), "GET", "/BTC-EUR/book")

        assert isinstance(result.error, ApiError)
        assert result.error.error_code == 205
        assert result.status_code == 400

    def test_http_status_without_error_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        result = _run(_transport(handler), "GET", "/time")
        assert isinstance(result.error, TransportError)
        assert result.status_code == 503

    def test_network_failure_is_typed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = _run(_transport(handler), "GET", "/time")
        assert isinstance(result.error, TransportError)
        assert result.status_code == 0

    def test_refuse_policy_skips_request(self) -> None:
        governor = RateLimitGovernor()
        governor.record_error(
            {"errorCode": 105, "error": f"The ban expires at {int(time.time() * 1000) + 60_000}."}
        )
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        result = _run(_transport(handler, governor=governor, rate_limit_wait=False), "GET", "/time")

        assert calls == []
        assert isinstance(result.error, RateLimitExceeded)


def test_build_path_and_body() -> None:
    assert RestTransport.build_path("time") == "/time"
    assert RestTransport.build_path("/trades", {"market": "BTC-EUR", "limit": 5}) == "/trades?market=BTC-EUR&limit=5"
    assert RestTransport.encode_body(None) == ""
    assert json.loads(RestTransport.encode_body({"a": 1})) == {"a": 1}
