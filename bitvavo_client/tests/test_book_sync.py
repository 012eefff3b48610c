"""Tests for local order-book synchronisation over the socket."""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace

from bitvavo_client.config import BitvavoSettings
from bitvavo_client.errors import TransportError
from bitvavo_client.exchanges.stream import StreamSession
from bitvavo_client.framework.order_book import BookPhase

SETTINGS = BitvavoSettings(call_timeout_seconds=1.0, close_grace_seconds=0.1)
SHORT_CALLS = replace(SETTINGS, call_timeout_seconds=0.1)


class BookSocket:
    """Fake socket answering getBook with queued snapshots."""

    def __init__(self, snapshots):
        self.sent: list[dict] = []
        self._snapshots = list(snapshots)
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def recv(self):
        return await self._inbox.get()

    async def send(self, data):
        frame = json.loads(data)
        self.sent.append(frame)
        if frame.get("action") == "getBook" and self._snapshots:
            snapshot = self._snapshots.pop(0)
            self.push({"action": "getBook", "requestId": frame["requestId"], "response": snapshot})

    def push(self, frame):
        self._inbox.put_nowait(json.dumps(frame))

    async def close(self):
        pass

    def actions(self) -> list[str]:
        return [frame["action"] for frame in self.sent]


def _snapshot(nonce: int, bid: str = "100") -> dict:
    return {"market": "BTC-EUR", "nonce": nonce, "bids": [[bid, "1"]], "asks": [["101", "1"]]}


def _delta(nonce: int, bids: list) -> dict:
    return {"event": "book", "market": "BTC-EUR", "nonce": nonce, "bids": bids, "asks": []}


def _session(ws: BookSocket, settings: BitvavoSettings = SETTINGS) -> StreamSession:
    async def connect(url, **kwargs):
        return ws

    return StreamSession(settings, connector=connect)


def test_snapshot_then_live_deltas() -> None:
    books: list[dict] = []

    async def _run():
        ws = BookSocket([_snapshot(10)])
        session = _session(ws)
        await session.connect()
        await session.subscribe_book("BTC-EUR", books.append)
        ws.push(_delta(11, [["99", "2"]]))
        await asyncio.sleep(0.02)
        phase = session.local_book("BTC-EUR").phase
        await session.aclose()
        return ws, phase

    ws, phase = asyncio.run(_run())
    assert ws.actions() == ["getBook", "subscribe"]
    assert ws.sent[1]["channels"] == [{"name": "book", "markets": ["BTC-EUR"]}]
    assert phase is BookPhase.LIVE
    assert [book["nonce"] for book in books] == [10, 11]
    assert books[-1]["bids"] == [["100", "1"], ["99", "2"]]


def test_gap_triggers_fresh_snapshot() -> None:
    books: list[dict] = []

    async def _run():
        ws = BookSocket([_snapshot(10), _snapshot(20, bid="105")])
        session = _session(ws)
        await session.connect()
        await session.subscribe_book("BTC-EUR", books.append)
        ws.push(_delta(12, [["90", "7"]]))
        await asyncio.sleep(0.05)
        book = session.local_book("BTC-EUR")
        result = (book.phase, book.nonce, book.bids())
        await session.aclose()
        return ws, result

    ws, (phase, nonce, bids) = asyncio.run(_run())
    assert ws.actions() == ["getBook", "subscribe", "getBook"]
    assert phase is BookPhase.LIVE
    assert nonce == 20
    assert ["90", "7"] not in bids
    assert [book["nonce"] for book in books] == [10, 20]


def test_single_resync_per_market() -> None:
    async def _run():
        ws = BookSocket([_snapshot(10), _snapshot(30)])
        session = _session(ws)
        await session.connect()
        await session.subscribe_book("BTC-EUR", lambda book: None)
        ws.push(_delta(12, []))
        ws.push(_delta(14, []))
        ws.push(_delta(16, []))
        await asyncio.sleep(0.05)
        await session.aclose()
        return ws

    ws = asyncio.run(_run())
    assert ws.actions().count("getBook") == 2


def test_disconnect_marks_book_stale_and_reconnect_resyncs() -> None:
    async def _run():
        ws = BookSocket([_snapshot(10), _snapshot(40)])
        session = _session(ws)
        await session.connect()
        await session.subscribe_book("BTC-EUR", lambda book: None)
        await session.disconnect()
        stale = session.local_book("BTC-EUR").phase
        await session.connect()
        await asyncio.sleep(0.05)
        book = session.local_book("BTC-EUR")
        result = (stale, book.phase, book.nonce)
        await session.aclose()
        return ws, result

    ws, (stale, phase, nonce) = asyncio.run(_run())
    assert stale is BookPhase.STALE
    assert phase is BookPhase.LIVE
    assert nonce == 40
    assert ws.actions()[-2:] in (["subscribe", "getBook"], ["getBook", "subscribe"])


def test_unsubscribe_book_drops_local_copy() -> None:
    async def _run():
        ws = BookSocket([_snapshot(10)])
        session = _session(ws)
        await session.connect()
        await session.subscribe_book("BTC-EUR", lambda book: None)
        removed = await session.unsubscribe_book("BTC-EUR")
        book = session.local_book("BTC-EUR")
        await session.aclose()
        return ws, removed, book

    ws, removed, book = asyncio.run(_run())
    assert removed is True
    assert book is None
    assert ws.actions() == ["getBook", "subscribe", "unsubscribe"]


def test_raw_book_unsubscribe_keeps_local_stream() -> None:
    raw: list[dict] = []

    async def _run():
        ws = BookSocket([_snapshot(10)])
        session = _session(ws)
        await session.connect()
        await session.subscribe_book("BTC-EUR", lambda book: None)
        await session.subscribe("book", "BTC-EUR", raw.append)
        removed = await session.unsubscribe("book", "BTC-EUR")
        ws.push(_delta(11, [["99", "1"]]))
        await asyncio.sleep(0.02)
        book = session.local_book("BTC-EUR")
        result = (removed, book.phase, book.nonce)
        await session.aclose()
        return ws, result

    ws, (removed, phase, nonce) = asyncio.run(_run())
    assert removed is True
    assert "unsubscribe" not in ws.actions()
    assert phase is BookPhase.LIVE
    assert nonce == 11
    assert raw == []


def test_failed_snapshot_rolls_back_local_book() -> None:
    async def _run():
        ws = BookSocket([])
        session = _session(ws, SHORT_CALLS)
        await session.connect()
        try:
            await session.subscribe_book("BTC-EUR", lambda book: None)
        except TransportError as exc:
            error = exc
        else:
            error = None
        result = (error, session.local_book("BTC-EUR"), len(session.registry))
        await session.aclose()
        return ws, result

    ws, (error, book, entries) = asyncio.run(_run())
    assert isinstance(error, TransportError)
    assert book is None
    assert entries == 0
    assert ws.actions() == ["getBook"]


def test_failed_snapshot_keeps_raw_subscriber() -> None:
    async def _run():
        ws = BookSocket([])
        session = _session(ws, SHORT_CALLS)
        await session.connect()
        await session.subscribe("book", "BTC-EUR", lambda frame: None)
        try:
            await session.subscribe_book("BTC-EUR", lambda book: None)
        except TransportError:
            pass
        keys = session.registry.keys()
        await session.aclose()
        return keys

    assert asyncio.run(_run()) == [("book", "BTC-EUR", None)]
