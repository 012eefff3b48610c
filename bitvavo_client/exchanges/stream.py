"""Streaming socket session: lifecycle, authentication, correlation, dispatch.

One session owns one socket and one receive-loop task. The loop is the
only consumer of inbound frames; it classifies each frame as a reply to a
pending single-shot action, a subscription event, an authentication
acknowledgment, or something unexpected, and routes it accordingly. A bad
frame is logged and dropped without ending the loop.

Outbound actions carry an incrementing ``requestId``. Replies that echo it
are matched exactly; replies that do not are matched to the oldest pending
call for the same action.

Private actions wait for the authenticated state in a bounded loop and are
released in call order. Without credentials they fail immediately.

Callbacks run on the receive loop. A callback must not await a reply from
the same session; schedule such work with ``asyncio.create_task`` instead.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from bitvavo_client.config import BitvavoSettings
from bitvavo_client.errors import (
    BitvavoError,
    ConfigurationError,
    ProtocolError,
    RateLimitExceeded,
    TransportError,
    error_from_payload,
)
from bitvavo_client.framework.order_book import BookPhase, BookUpdateOutcome, LocalBook
from bitvavo_client.framework.rate_governor import RateLimitGovernor, RateLimitGovernorConfig
from bitvavo_client.framework.signer import Signer
from bitvavo_client.framework.subscriptions import Callback, SubscriptionRegistry
from bitvavo_client.models import Channel, SessionState

LOGGER = logging.getLogger(__name__)

SINGLE_SHOT_ACTIONS = frozenset(
    {
        "getTime",
        "getMarkets",
        "getAssets",
        "getBook",
        "getTrades",
        "getCandles",
        "getTickerPrice",
        "getTickerBook",
        "getTicker24h",
        "privateCreateOrder",
        "privateUpdateOrder",
        "privateGetOrder",
        "privateCancelOrder",
        "privateGetOrders",
        "privateCancelOrders",
        "privateGetOrdersOpen",
        "privateGetTrades",
        "privateGetAccount",
        "privateGetBalance",
        "privateDepositAssets",
        "privateWithdrawAssets",
        "privateGetDepositHistory",
        "privateGetWithdrawalHistory",
    }
)

EVENT_CHANNELS = {
    "ticker": Channel.TICKER.value,
    "ticker24h": Channel.TICKER_24H.value,
    "trade": Channel.TRADES.value,
    "candle": Channel.CANDLES.value,
    "book": Channel.BOOK.value,
    "order": Channel.ACCOUNT.value,
    "fill": Channel.ACCOUNT.value,
}

PRIVATE_CHANNELS = frozenset({Channel.ACCOUNT.value})

# Registry sub-key of local order-book subscribers on the book channel.
LOCAL_BOOK_KEY = "local"

_LIVE_STATES = frozenset({SessionState.CONNECTED, SessionState.AUTHENTICATING, SessionState.AUTHENTICATED})
_ENDED_STATES = frozenset({SessionState.DISCONNECTED, SessionState.CLOSING, SessionState.CLOSED})
_MAX_BOOK_SYNC_ATTEMPTS = 5


def is_private_action(action: str) -> bool:
    return action.startswith("private")


@dataclass
class PendingCall:
    correlation_key: str
    request_id: int
    future: asyncio.Future


class StreamSession:
    def __init__(
        self,
        settings: BitvavoSettings,
        governor: RateLimitGovernor | None = None,
        registry: SubscriptionRegistry | None = None,
        connector: Callable[..., Awaitable[Any]] | None = None,
        on_error: Callable[[BitvavoError], Any] | None = None,
    ) -> None:
        self._settings = settings
        self._signer = Signer(settings.credentials)
        self._governor = governor or RateLimitGovernor(
            RateLimitGovernorConfig(default_budget=settings.rate_limit_default)
        )
        self._registry = registry or SubscriptionRegistry()
        self._connector = connector or websockets.connect
        self.on_error = on_error

        self._state = SessionState.DISCONNECTED
        self._socket: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._background: Set[asyncio.Task[Any]] = set()
        self._disconnect_requested = False

        self._request_seq = 0
        self._pending_by_action: Dict[str, Deque[PendingCall]] = {}
        self._pending_by_id: Dict[int, PendingCall] = {}

        self._auth_changed = asyncio.Event()
        self._auth_error: BitvavoError | None = None
        self._private_lock = asyncio.Lock()

        self._books: Dict[str, LocalBook] = {}
        self._resync_tasks: Dict[str, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def governor(self) -> RateLimitGovernor:
        return self._governor

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def pending_count(self) -> int:
        return len(self._pending_by_id)

    def local_book(self, market: str) -> LocalBook | None:
        return self._books.get(market)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            raise TransportError("session has been closed")
        if self._state is not SessionState.DISCONNECTED:
            return

        self._loop = asyncio.get_running_loop()
        self._disconnect_requested = False
        self._set_state(SessionState.CONNECTING)
        url = self._settings.ws_url
        try:
            socket = await self._connector(
                url,
                ping_interval=self._settings.ping_interval_seconds,
                ping_timeout=self._settings.ping_interval_seconds,
                max_size=None,
            )
        except asyncio.CancelledError:
            self._set_state(SessionState.DISCONNECTED)
            raise
        except Exception as exc:
            self._set_state(SessionState.DISCONNECTED)
            raise TransportError(f"could not connect to {url}: {exc}") from exc

        self._socket = socket
        self._set_state(SessionState.CONNECTED)
        self._receive_task = self._loop.create_task(self._receive_loop(socket))
        LOGGER.info("bitvavo socket connected url=%s", url)

        if self._signer.can_sign:
            await self._authenticate()
        if self._settings.resubscribe_on_reconnect and len(self._registry) > 0:
            self._spawn(self._resubscribe_all())

    async def disconnect(self) -> None:
        """Close the socket; pending calls fail, subscriptions are kept."""
        self._disconnect_requested = True
        socket = self._socket
        task = self._receive_task
        self._socket = None
        self._receive_task = None

        if socket is not None:
            try:
                await asyncio.wait_for(socket.close(), timeout=self._settings.close_grace_seconds)
            except asyncio.TimeoutError:
                LOGGER.warning("bitvavo socket close handshake timed out")
            except Exception as exc:
                LOGGER.debug("bitvavo socket close failed: %s", exc)

        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self._connection_ended()

    async def aclose(self) -> None:
        """Dispose the session for good; safe to call more than once."""
        if self._state is SessionState.CLOSED:
            return
        await self.disconnect()
        self._set_state(SessionState.CLOSING)

        tasks = [task for task in (self._reconnect_task, *self._resync_tasks.values(), *self._background) if task]
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        await asyncio.gather(*(task for task in tasks if task is not current), return_exceptions=True)
        self._reconnect_task = None
        self._resync_tasks.clear()
        self._background.clear()
        self._set_state(SessionState.CLOSED)
        LOGGER.info("bitvavo socket session closed")

    def submit(self, coro: Awaitable[Any]) -> concurrent.futures.Future:
        """Run ``coro`` on the session loop from any thread."""
        if self._loop is None:
            raise TransportError("session has no event loop; call connect() first")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    # ------------------------------------------------------------------
    # Single-shot actions
    # ------------------------------------------------------------------

    async def call(
        self,
        action: str,
        params: Dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send ``action`` and return the ``response`` of its reply."""
        private = is_private_action(action)
        if private and not self._signer.can_sign:
            raise ConfigurationError(f"{action} requires api key and secret")

        self._request_seq += 1
        request_id = self._request_seq
        payload: Dict[str, Any] = {"action": action, **(params or {}), "requestId": request_id}
        wait_seconds = self._settings.call_timeout_seconds if timeout is None else timeout

        loop = asyncio.get_running_loop()
        pending = PendingCall(
            correlation_key=action,
            request_id=request_id,
            future=loop.create_future(),
        )
        self._pending_by_action.setdefault(action, deque()).append(pending)
        self._pending_by_id[request_id] = pending
        try:
            if private:
                await self._send_private(payload)
            else:
                await self._send(payload)
            try:
                return await asyncio.wait_for(pending.future, timeout=wait_seconds)
            except asyncio.TimeoutError as exc:
                raise TransportError(f"{action} timed out after {wait_seconds:.1f}s") from exc
        finally:
            self._discard_pending(pending)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        channel: str,
        market: str,
        callback: Callback,
        interval: str | None = None,
    ) -> None:
        """Register ``callback`` and subscribe the channel for ``market``.

        When the socket is down the entry is kept and subscribed on the
        next connect.
        """
        if channel in PRIVATE_CHANNELS and not self._signer.can_sign:
            raise ConfigurationError(f"{channel} channel requires api key and secret")
        self._registry.add(channel, market, callback, sub_key=interval)
        if self._state not in _LIVE_STATES:
            LOGGER.debug("socket not connected; %s/%s will be subscribed on connect", channel, market)
            return
        await self._send_channels("subscribe", [self._channel_entry(channel, [market], interval)])

    async def unsubscribe(self, channel: str, market: str, interval: str | None = None) -> bool:
        removed = self._registry.remove(channel, market, interval)
        if channel == Channel.BOOK.value and self._registry.get(channel, market, LOCAL_BOOK_KEY) is not None:
            # The local book for this market still needs the delta stream.
            return removed
        if self._state in _LIVE_STATES:
            await self._send_channels("unsubscribe", [self._channel_entry(channel, [market], interval)])
        return removed

    async def subscribe_book(self, market: str, callback: Callback) -> None:
        """Maintain a local order book for ``market``.

        A snapshot is fetched first, then book updates are subscribed and
        applied on top of it. ``callback`` receives the full book after
        every change.
        """
        subscription = self._registry.add(Channel.BOOK.value, market, callback, sub_key=LOCAL_BOOK_KEY)
        book = LocalBook(market)
        self._books[market] = book
        if self._state not in _LIVE_STATES:
            return
        try:
            await self._sync_book(market)
        except BaseException:
            # A failed snapshot drops both the entry and the book.
            if self._registry.get(Channel.BOOK.value, market, LOCAL_BOOK_KEY) is subscription:
                self._registry.remove(Channel.BOOK.value, market, LOCAL_BOOK_KEY)
            if self._books.get(market) is book:
                del self._books[market]
            raise
        await self._send_channels("subscribe", [self._channel_entry(Channel.BOOK.value, [market])])

    async def unsubscribe_book(self, market: str) -> bool:
        removed = self._registry.remove(Channel.BOOK.value, market, LOCAL_BOOK_KEY)
        self._books.pop(market, None)
        task = self._resync_tasks.pop(market, None)
        if task is not None:
            task.cancel()
        still_raw = self._registry.get(Channel.BOOK.value, market) is not None
        if not still_raw and self._state in _LIVE_STATES:
            await self._send_channels("unsubscribe", [self._channel_entry(Channel.BOOK.value, [market])])
        return removed

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send(self, payload: Dict[str, Any]) -> None:
        socket = self._socket
        if socket is None or self._state not in _LIVE_STATES:
            raise TransportError("socket is not connected")
        admitted = await self._governor.acquire(
            wait=self._settings.rate_limit_wait,
            timeout=self._settings.rate_limit_max_wait_seconds,
        )
        if not admitted:
            raise RateLimitExceeded(
                "rate limit budget exhausted",
                reset_at_ms=self._governor.state.reset_at_ms,
            )
        text = json.dumps(payload)
        LOGGER.debug("bitvavo socket send %s", payload.get("action"))
        try:
            await socket.send(text)
        except ConnectionClosed as exc:
            raise TransportError(f"connection closed while sending {payload.get('action')}") from exc

    async def _send_private(self, payload: Dict[str, Any]) -> None:
        if not self._signer.can_sign:
            raise ConfigurationError(f"{payload.get('action')} requires api key and secret")
        # asyncio.Lock is FIFO, which keeps queued private sends in call order.
        async with self._private_lock:
            await self._wait_authenticated()
            await self._send(payload)

    async def _wait_authenticated(self) -> None:
        interval = max(0.001, self._settings.private_retry_interval_seconds)
        deadline = time.monotonic() + self._settings.auth_timeout_seconds
        while self._state is not SessionState.AUTHENTICATED:
            if self._auth_error is not None:
                raise self._auth_error
            if self._state in _ENDED_STATES:
                raise TransportError("socket is not connected")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransportError("timed out waiting for socket authentication")
            try:
                await asyncio.wait_for(self._auth_changed.wait(), timeout=min(interval, remaining))
            except asyncio.TimeoutError:
                pass

    async def _send_channels(self, action: str, channels: list[Dict[str, Any]]) -> None:
        payload = {"action": action, "channels": channels}
        if any(entry["name"] in PRIVATE_CHANNELS for entry in channels):
            await self._send_private(payload)
        else:
            await self._send(payload)

    @staticmethod
    def _channel_entry(channel: str, markets: list[str], interval: str | None = None) -> Dict[str, Any]:
        entry: Dict[str, Any] = {"name": channel, "markets": markets}
        if interval and channel == Channel.CANDLES.value:
            entry["interval"] = [interval]
        return entry

    async def _authenticate(self) -> None:
        self._auth_error = None
        self._auth_changed.clear()
        self._set_state(SessionState.AUTHENTICATING)
        try:
            await self._send(self._signer.authenticate_action())
        except BitvavoError as exc:
            LOGGER.warning("bitvavo socket authentication could not be sent: %s", exc)
            self._auth_error = exc
            self._auth_changed.set()

    async def _resubscribe_all(self) -> None:
        groups: Dict[tuple[str, Optional[str]], list[str]] = {}
        for entry in self._registry.entries():
            if entry.channel == Channel.BOOK.value and entry.sub_key == LOCAL_BOOK_KEY:
                self._books.setdefault(entry.market, LocalBook(entry.market))
                self._schedule_book_sync(entry.market)
            interval = entry.sub_key if entry.channel == Channel.CANDLES.value else None
            markets = groups.setdefault((entry.channel, interval), [])
            if entry.market not in markets:
                markets.append(entry.market)

        for (channel, interval), markets in groups.items():
            try:
                await self._send_channels("subscribe", [self._channel_entry(channel, markets, interval)])
            except BitvavoError as exc:
                LOGGER.warning("bitvavo resubscribe %s failed: %s", channel, exc)

    # ------------------------------------------------------------------
    # Receive loop and dispatch
    # ------------------------------------------------------------------

    async def _receive_loop(self, socket: Any) -> None:
        try:
            while True:
                raw = await socket.recv()
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")
                await self._handle_raw(raw)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            LOGGER.info("bitvavo socket closed by server: %s", exc)
        except Exception as exc:
            LOGGER.warning("bitvavo socket receive failed: %s", exc)

        if self._socket is socket:
            self._socket = None
            self._receive_task = None
            self._connection_ended()
            if self._settings.auto_reconnect and not self._disconnect_requested:
                self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

    async def _handle_raw(self, raw: str) -> None:
        try:
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ProtocolError("undecodable frame", raw) from exc
            if not isinstance(frame, dict):
                raise ProtocolError("frame is not an object", frame)
            await self._dispatch(frame)
        except ProtocolError as exc:
            self._report_error(exc)
        except Exception as exc:
            LOGGER.exception("bitvavo socket dispatch failed")
            self._report_error(ProtocolError(f"dispatch failed: {exc}", raw))

    async def _dispatch(self, frame: Dict[str, Any]) -> None:
        action = frame.get("action")
        if action is not None:
            self._handle_action_reply(str(action), frame)
            return

        event = frame.get("event")
        if event is not None:
            event = str(event)
            if event == "authenticate":
                self._handle_authenticated(frame)
                return
            if event in ("subscribed", "unsubscribed"):
                LOGGER.debug("bitvavo socket %s: %s", event, frame.get("subscriptions"))
                return
            channel = EVENT_CHANNELS.get(event)
            if channel is not None:
                await self._dispatch_event(event, channel, frame)
                return

        if "errorCode" in frame:
            self._governor.record_error(frame)
            self._report_error(error_from_payload(frame))
            return
        raise ProtocolError("unrecognised frame", frame)

    def _handle_action_reply(self, action: str, frame: Dict[str, Any]) -> None:
        if action == "authenticate":
            # Only error replies carry the action; success is an event.
            message = str(frame.get("error") or "socket authentication rejected")
            self._auth_failed(ConfigurationError(message))
            return

        if "errorCode" in frame:
            self._governor.record_error(frame)
            error = error_from_payload(frame)
            pending = self._take_pending(action, frame.get("requestId"))
            if pending is not None:
                pending.future.set_exception(error)
            else:
                self._report_error(error)
            return

        if action not in SINGLE_SHOT_ACTIONS:
            raise ProtocolError(f"reply for unknown action {action}", frame)
        pending = self._take_pending(action, frame.get("requestId"))
        if pending is None:
            LOGGER.debug("no pending call for %s reply; dropping", action)
            return
        pending.future.set_result(frame.get("response"))

    def _handle_authenticated(self, frame: Dict[str, Any]) -> None:
        if frame.get("authenticated") is True:
            self._auth_error = None
            self._set_state(SessionState.AUTHENTICATED)
            self._auth_changed.set()
            LOGGER.info("bitvavo socket authenticated")
            return
        self._auth_failed(ConfigurationError("socket authentication rejected"))

    def _auth_failed(self, error: ConfigurationError) -> None:
        LOGGER.error("bitvavo socket authentication failed: %s", error)
        self._auth_error = error
        if self._state is SessionState.AUTHENTICATING:
            self._set_state(SessionState.CONNECTED)
        self._auth_changed.set()

    async def _dispatch_event(self, event: str, channel: str, frame: Dict[str, Any]) -> None:
        if event == "ticker24h":
            for item in frame.get("data") or []:
                if isinstance(item, dict) and item.get("market"):
                    await self._registry.dispatch(channel, str(item["market"]), item)
            return

        market = frame.get("market")
        if not market:
            raise ProtocolError(f"{event} event without market", frame)
        market = str(market)

        if event == "candle":
            await self._registry.dispatch(channel, market, frame, sub_key=frame.get("interval"))
        elif event == "book":
            await self._registry.dispatch(channel, market, frame)
            await self._apply_book_update(market, frame)
        else:
            await self._registry.dispatch(channel, market, frame)

    def _report_error(self, error: BitvavoError) -> None:
        LOGGER.warning("bitvavo socket error: %s", error)
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception:
            LOGGER.exception("bitvavo socket error handler failed")

    # ------------------------------------------------------------------
    # Order-book synchronisation
    # ------------------------------------------------------------------

    async def _apply_book_update(self, market: str, frame: Dict[str, Any]) -> None:
        book = self._books.get(market)
        if book is None:
            return
        outcome = book.apply_update(frame)
        if outcome is BookUpdateOutcome.APPLIED:
            await self._registry.dispatch(Channel.BOOK.value, market, book.to_dict(), sub_key=LOCAL_BOOK_KEY)
        elif outcome is BookUpdateOutcome.GAP:
            LOGGER.warning("%s; resynchronising", book.last_gap)
            self._schedule_book_sync(market)

    def _schedule_book_sync(self, market: str) -> None:
        running = self._resync_tasks.get(market)
        if running is not None and not running.done():
            return
        task = asyncio.get_running_loop().create_task(self._sync_book_safely(market))
        self._resync_tasks[market] = task

    async def _sync_book_safely(self, market: str) -> None:
        try:
            await self._sync_book(market)
        except (BitvavoError, asyncio.TimeoutError) as exc:
            LOGGER.warning("bitvavo book %s resync failed: %s", market, exc)

    async def _sync_book(self, market: str) -> None:
        for attempt in range(1, _MAX_BOOK_SYNC_ATTEMPTS + 1):
            book = self._books.get(market)
            if book is None:
                return
            if book.phase is not BookPhase.AWAITING_SNAPSHOT:
                book.mark_resyncing()
            snapshot = await self.call("getBook", {"market": market})
            if self._books.get(market) is not book:
                return
            if not isinstance(snapshot, dict):
                raise ProtocolError(f"getBook {market} returned no book", snapshot)
            if book.apply_snapshot(snapshot) is BookUpdateOutcome.APPLIED:
                await self._registry.dispatch(Channel.BOOK.value, market, book.to_dict(), sub_key=LOCAL_BOOK_KEY)
                return
            LOGGER.warning("%s after snapshot (attempt %d); fetching again", book.last_gap, attempt)
        LOGGER.error("bitvavo book %s could not be synchronised after %d attempts", market, _MAX_BOOK_SYNC_ATTEMPTS)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _take_pending(self, action: str, request_id: Any) -> PendingCall | None:
        try:
            exact_id = int(request_id) if request_id is not None else None
        except (TypeError, ValueError):
            exact_id = None
        if exact_id is not None:
            # An echoed id that is no longer pending belongs to a call that already ended.
            pending = self._pending_by_id.get(exact_id)
            if pending is None or pending.future.done():
                return None
            self._discard_pending(pending)
            return pending

        queue = self._pending_by_action.get(action)
        while queue:
            pending = queue.popleft()
            self._pending_by_id.pop(pending.request_id, None)
            if not pending.future.done():
                return pending
        return None

    def _discard_pending(self, pending: PendingCall) -> None:
        self._pending_by_id.pop(pending.request_id, None)
        queue = self._pending_by_action.get(pending.correlation_key)
        if queue is not None and pending in queue:
            queue.remove(pending)
        if queue is not None and not queue:
            self._pending_by_action.pop(pending.correlation_key, None)

    def _fail_pending(self, error: BitvavoError) -> None:
        pending_calls = list(self._pending_by_id.values())
        self._pending_by_id.clear()
        self._pending_by_action.clear()
        for pending in pending_calls:
            if not pending.future.done():
                pending.future.set_exception(error)

    def _connection_ended(self) -> None:
        if self._state not in (SessionState.CLOSING, SessionState.CLOSED):
            self._set_state(SessionState.DISCONNECTED)
        self._fail_pending(TransportError("connection closed"))
        self._auth_changed.set()
        for book in self._books.values():
            if book.phase is BookPhase.LIVE:
                book.phase = BookPhase.STALE

    async def _reconnect_loop(self) -> None:
        delay = max(0.0, self._settings.reconnect_delay_seconds)
        while self._state is SessionState.DISCONNECTED and not self._disconnect_requested:
            await asyncio.sleep(delay)
            if self._state is not SessionState.DISCONNECTED or self._disconnect_requested:
                return
            try:
                await self.connect()
                return
            except TransportError as exc:
                LOGGER.warning("bitvavo socket reconnect failed: %s", exc)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        LOGGER.debug("bitvavo socket state %s -> %s", self._state.value, state.value)
        self._state = state
