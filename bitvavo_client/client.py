"""Bitvavo client surface: one method per REST endpoint and socket action.

``BitvavoClient`` owns the rate-limit governor and hands it to its REST
transport and to every socket session it creates, so both transports draw
from the same server-reported budget.

Usage::

    async with BitvavoClient(load_settings()) as client:
        result = await client.time()
        print(result.unwrap())

        ws = client.websocket()
        await ws.connect()
        await ws.subscribe_ticker("BTC-EUR", print)

Methods map their arguments onto the exchange payload and nothing more;
``options`` carries any further fields verbatim.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

from bitvavo_client.config import BitvavoSettings, load_settings
from bitvavo_client.exchanges.rest import RestResult, RestTransport
from bitvavo_client.exchanges.stream import StreamSession
from bitvavo_client.framework.rate_governor import RateLimitGovernor, RateLimitGovernorConfig
from bitvavo_client.framework.subscriptions import Callback
from bitvavo_client.models import Channel

LOGGER = logging.getLogger(__name__)

Options = Dict[str, Any]


def _merge(base: Options, options: Options | None) -> Options:
    merged = dict(options or {})
    merged.update({name: value for name, value in base.items() if value is not None})
    return merged


class BitvavoClient:
    def __init__(
        self,
        settings: BitvavoSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or load_settings()
        self._governor = RateLimitGovernor(
            RateLimitGovernorConfig(default_budget=self._settings.rate_limit_default)
        )
        self._rest = RestTransport(
            credentials=self._settings.credentials,
            governor=self._governor,
            base_url=self._settings.rest_url,
            timeout_seconds=self._settings.request_timeout_seconds,
            rate_limit_wait=self._settings.rate_limit_wait,
            rate_limit_max_wait_seconds=self._settings.rate_limit_max_wait_seconds,
            client=client,
        )
        self._sockets: list[BitvavoWebSocket] = []

    @property
    def settings(self) -> BitvavoSettings:
        return self._settings

    @property
    def governor(self) -> RateLimitGovernor:
        return self._governor

    def remaining_budget(self) -> int:
        return self._governor.remaining_budget()

    def websocket(self, **kwargs: Any) -> BitvavoWebSocket:
        """Create a socket session sharing this client's governor."""
        socket = BitvavoWebSocket(self._settings, governor=self._governor, **kwargs)
        self._sockets.append(socket)
        return socket

    async def aclose(self) -> None:
        for socket in self._sockets:
            await socket.aclose()
        self._sockets.clear()
        await self._rest.aclose()
        await self._governor.aclose()

    async def __aenter__(self) -> BitvavoClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # -- public endpoints ---------------------------------------------------

    async def time(self) -> RestResult:
        return await self._rest.execute("GET", "/time")

    async def markets(self, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", "/markets", query=options)

    async def assets(self, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", "/assets", query=options)

    async def book(self, market: str, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", f"/{market}/book", query=options)

    async def public_trades(self, market: str, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", f"/{market}/trades", query=options)

    async def candles(self, market: str, interval: str, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", f"/{market}/candles", query=_merge({"interval": interval}, options))

    async def ticker_price(self, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", "/ticker/price", query=options)

    async def ticker_book(self, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", "/ticker/book", query=options)

    async def ticker_24h(self, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", "/ticker/24h", query=options)

    # -- private endpoints --------------------------------------------------

    async def place_order(self, market: str, side: str, order_type: str, body: Options | None = None) -> RestResult:
        payload = _merge({"market": market, "side": side, "orderType": order_type}, body)
        return await self._rest.execute("POST", "/order", body=payload, private=True)

    async def get_order(self, market: str, order_id: str) -> RestResult:
        query = {"market": market, "orderId": order_id}
        return await self._rest.execute("GET", "/order", query=query, private=True)

    async def update_order(self, market: str, order_id: str, body: Options | None = None) -> RestResult:
        payload = _merge({"market": market, "orderId": order_id}, body)
        return await self._rest.execute("PUT", "/order", body=payload, private=True)

    async def cancel_order(self, market: str, order_id: str) -> RestResult:
        query = {"market": market, "orderId": order_id}
        return await self._rest.execute("DELETE", "/order", query=query, private=True)

    async def get_orders(self, market: str, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", "/orders", query=_merge({"market": market}, options), private=True)

    async def cancel_orders(self, options: Options | None = None) -> RestResult:
        return await self._rest.execute("DELETE", "/orders", query=options, private=True)

    async def orders_open(self, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", "/ordersOpen", query=options, private=True)

    async def trades(self, market: str, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", "/trades", query=_merge({"market": market}, options), private=True)

    async def account(self) -> RestResult:
        return await self._rest.execute("GET", "/account", private=True)

    async def balance(self, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", "/balance", query=options, private=True)

    async def deposit_assets(self, symbol: str) -> RestResult:
        return await self._rest.execute("GET", "/deposit", query={"symbol": symbol}, private=True)

    async def withdraw_assets(
        self,
        symbol: str,
        amount: str,
        address: str,
        options: Options | None = None,
    ) -> RestResult:
        payload = _merge({"symbol": symbol, "amount": amount, "address": address}, options)
        return await self._rest.execute("POST", "/withdrawal", body=payload, private=True)

    async def deposit_history(self, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", "/depositHistory", query=options, private=True)

    async def withdrawal_history(self, options: Options | None = None) -> RestResult:
        return await self._rest.execute("GET", "/withdrawalHistory", query=options, private=True)


class BitvavoWebSocket(StreamSession):
    """Socket session with named wrappers for every action and channel."""

    # -- public actions -----------------------------------------------------

    async def time(self) -> Any:
        return await self.call("getTime")

    async def markets(self, options: Options | None = None) -> Any:
        return await self.call("getMarkets", options)

    async def assets(self, options: Options | None = None) -> Any:
        return await self.call("getAssets", options)

    async def book(self, market: str, options: Options | None = None) -> Any:
        return await self.call("getBook", _merge({"market": market}, options))

    async def public_trades(self, market: str, options: Options | None = None) -> Any:
        return await self.call("getTrades", _merge({"market": market}, options))

    async def candles(self, market: str, interval: str, options: Options | None = None) -> Any:
        return await self.call("getCandles", _merge({"market": market, "interval": interval}, options))

    async def ticker_price(self, options: Options | None = None) -> Any:
        return await self.call("getTickerPrice", options)

    async def ticker_book(self, options: Options | None = None) -> Any:
        return await self.call("getTickerBook", options)

    async def ticker_24h(self, options: Options | None = None) -> Any:
        return await self.call("getTicker24h", options)

    # -- private actions ----------------------------------------------------

    async def place_order(self, market: str, side: str, order_type: str, body: Options | None = None) -> Any:
        return await self.call(
            "privateCreateOrder",
            _merge({"market": market, "side": side, "orderType": order_type}, body),
        )

    async def update_order(self, market: str, order_id: str, body: Options | None = None) -> Any:
        return await self.call("privateUpdateOrder", _merge({"market": market, "orderId": order_id}, body))

    async def get_order(self, market: str, order_id: str) -> Any:
        return await self.call("privateGetOrder", {"market": market, "orderId": order_id})

    async def cancel_order(self, market: str, order_id: str) -> Any:
        return await self.call("privateCancelOrder", {"market": market, "orderId": order_id})

    async def get_orders(self, market: str, options: Options | None = None) -> Any:
        return await self.call("privateGetOrders", _merge({"market": market}, options))

    async def cancel_orders(self, options: Options | None = None) -> Any:
        return await self.call("privateCancelOrders", options)

    async def orders_open(self, options: Options | None = None) -> Any:
        return await self.call("privateGetOrdersOpen", options)

    async def trades(self, market: str, options: Options | None = None) -> Any:
        return await self.call("privateGetTrades", _merge({"market": market}, options))

    async def account(self) -> Any:
        return await self.call("privateGetAccount")

    async def balance(self, options: Options | None = None) -> Any:
        return await self.call("privateGetBalance", options)

    async def deposit_assets(self, symbol: str) -> Any:
        return await self.call("privateDepositAssets", {"symbol": symbol})

    async def withdraw_assets(self, symbol: str, amount: str, address: str, options: Options | None = None) -> Any:
        return await self.call(
            "privateWithdrawAssets",
            _merge({"symbol": symbol, "amount": amount, "address": address}, options),
        )

    async def deposit_history(self, options: Options | None = None) -> Any:
        return await self.call("privateGetDepositHistory", options)

    async def withdrawal_history(self, options: Options | None = None) -> Any:
        return await self.call("privateGetWithdrawalHistory", options)

    # -- channels -----------------------------------------------------------

    async def subscribe_ticker(self, market: str, callback: Callback) -> None:
        await self.subscribe(Channel.TICKER.value, market, callback)

    async def subscribe_ticker_24h(self, market: str, callback: Callback) -> None:
        await self.subscribe(Channel.TICKER_24H.value, market, callback)

    async def subscribe_trades(self, market: str, callback: Callback) -> None:
        await self.subscribe(Channel.TRADES.value, market, callback)

    async def subscribe_candles(self, market: str, interval: str, callback: Callback) -> None:
        await self.subscribe(Channel.CANDLES.value, market, callback, interval=interval)

    async def subscribe_book_update(self, market: str, callback: Callback) -> None:
        """Raw book deltas, without a local copy."""
        await self.subscribe(Channel.BOOK.value, market, callback)

    async def subscribe_account(self, market: str, callback: Callback) -> None:
        """Order and fill events for ``market``; requires credentials."""
        await self.subscribe(Channel.ACCOUNT.value, market, callback)
