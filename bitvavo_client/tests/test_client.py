"""Tests for the endpoint surface of the client."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from bitvavo_client.client import BitvavoClient, BitvavoWebSocket
from bitvavo_client.config import BitvavoSettings
from bitvavo_client.errors import ConfigurationError

BASE_URL = "https://api.bitvavo.com/v2"
SIGNED = BitvavoSettings(api_key="key", api_secret="secret")


def _client(settings: BitvavoSettings, seen: list[httpx.Request]) -> BitvavoClient:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={}, headers={"Bitvavo-Ratelimit-Remaining": "900"})

    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return BitvavoClient(settings, client=http)


def _call(settings: BitvavoSettings, method: str, *args) -> tuple[httpx.Request, BitvavoClient]:
    seen: list[httpx.Request] = []

    async def _run():
        async with _client(settings, seen) as client:
            result = await getattr(client, method)(*args)
            assert result.ok, result.error
            return client

    client = asyncio.run(_run())
    return seen[0], client


@pytest.mark.parametrize(
    ("method", "args", "verb", "path"),
    [
        ("time", (), "GET", "/v2/time"),
        ("markets", ({"market": "BTC-EUR"},), "GET", "/v2/markets"),
        ("assets", (), "GET", "/v2/assets"),
        ("book", ("BTC-EUR", {"depth": 10}), "GET", "/v2/BTC-EUR/book"),
        ("public_trades", ("BTC-EUR",), "GET", "/v2/BTC-EUR/trades"),
        ("candles", ("BTC-EUR", "1h"), "GET", "/v2/BTC-EUR/candles"),
        ("ticker_price", (), "GET", "/v2/ticker/price"),
        ("ticker_book", (), "GET", "/v2/ticker/book"),
        ("ticker_24h", (), "GET", "/v2/ticker/24h"),
        ("get_order", ("BTC-EUR", "abc"), "GET", "/v2/order"),
        ("cancel_order", ("BTC-EUR", "abc"), "DELETE", "/v2/order"),
        ("get_orders", ("BTC-EUR",), "GET", "/v2/orders"),
        ("cancel_orders", (), "DELETE", "/v2/orders"),
        ("orders_open", (), "GET", "/v2/ordersOpen"),
        ("trades", ("BTC-EUR",), "GET", "/v2/trades"),
        ("account", (), "GET", "/v2/account"),
        ("balance", ({"symbol": "BTC"},), "GET", "/v2/balance"),
        ("deposit_assets", ("BTC",), "GET", "/v2/deposit"),
        ("deposit_history", (), "GET", "/v2/depositHistory"),
        ("withdrawal_history", (), "GET", "/v2/withdrawalHistory"),
    ],
)
def test_endpoint_routes(method, args, verb, path) -> None:
    request, _ = _call(SIGNED, method, *args)
    assert request.method == verb
    assert request.url.path == path


def test_query_parameters_mapped() -> None:
    request, _ = _call(SIGNED, "candles", "BTC-EUR", "1h", {"limit": 5})
    assert request.url.params["interval"] == "1h"
    assert request.url.params["limit"] == "5"

    request, _ = _call(SIGNED, "get_order", "BTC-EUR", "abc")
    assert request.url.params["market"] == "BTC-EUR"
    assert request.url.params["orderId"] == "abc"


def test_place_order_body() -> None:
    request, _ = _call(SIGNED, "place_order", "BTC-EUR", "buy", "limit", {"amount": "0.1", "price": "4000"})
    assert request.method == "POST"
    assert json.loads(request.content) == {
        "amount": "0.1",
        "price": "4000",
        "market": "BTC-EUR",
        "side": "buy",
        "orderType": "limit",
    }


def test_update_order_and_withdrawal_bodies() -> None:
    request, _ = _call(SIGNED, "update_order", "BTC-EUR", "abc", {"amount": "0.2"})
    assert request.method == "PUT"
    assert json.loads(request.content) == {"amount": "0.2", "market": "BTC-EUR", "orderId": "abc"}

    request, _ = _call(SIGNED, "withdraw_assets", "BTC", "1", "addr")
    assert request.url.path == "/v2/withdrawal"
    assert json.loads(request.content) == {"symbol": "BTC", "amount": "1", "address": "addr"}


def test_private_endpoint_without_credentials() -> None:
    seen: list[httpx.Request] = []

    async def _run():
        async with _client(BitvavoSettings(), seen) as client:
            return await client.balance()

    result = asyncio.run(_run())
    assert seen == []
    assert isinstance(result.error, ConfigurationError)


def test_governor_shared_with_websocket() -> None:
    seen: list[httpx.Request] = []

    async def _run():
        async with _client(SIGNED, seen) as client:
            await client.time()
            ws = client.websocket()
            return client, ws

    client, ws = asyncio.run(_run())
    assert isinstance(ws, BitvavoWebSocket)
    assert ws.governor is client.governor
    assert client.remaining_budget() == 900


def test_websocket_wrappers_build_actions() -> None:
    sent: list[dict] = []

    class EchoSocket:
        def __init__(self):
            self._inbox: asyncio.Queue = asyncio.Queue()

        async def recv(self):
            return await self._inbox.get()

        async def send(self, data):
            frame = json.loads(data)
            sent.append(frame)
            if frame["action"] == "authenticate":
                self._inbox.put_nowait(json.dumps({"event": "authenticate", "authenticated": True}))
            elif "requestId" in frame:
                self._inbox.put_nowait(
                    json.dumps({"action": frame["action"], "requestId": frame["requestId"], "response": frame})
                )

        async def close(self):
            pass

    async def _run():
        socket = EchoSocket()

        async def connect(url, **kwargs):
            return socket

        ws = BitvavoWebSocket(SIGNED, connector=connect)
        await ws.connect()
        candles = await ws.candles("BTC-EUR", "1m", {"limit": 2})
        order = await ws.place_order("BTC-EUR", "sell", "market", {"amount": "1"})
        await ws.subscribe_candles("BTC-EUR", "5m", print)
        await ws.aclose()
        return candles, order

    candles, order = asyncio.run(_run())
    assert candles["action"] == "getCandles"
    assert candles["interval"] == "1m"
    assert candles["limit"] == 2
    assert order["action"] == "privateCreateOrder"
    assert order["orderType"] == "market"
    assert sent[-1] == {
        "action": "subscribe",
        "channels": [{"name": "candles", "markets": ["BTC-EUR"], "interval": ["5m"]}],
    }
