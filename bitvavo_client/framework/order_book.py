"""Local order-book copy kept in sync from a snapshot plus nonce-ordered deltas.

Each market runs a small phase machine::

    AWAITING_SNAPSHOT --snapshot--> LIVE --gap--> STALE --resync--> RESYNCING --snapshot--> LIVE

Deltas must carry ``nonce == local nonce + 1``. Older deltas are ignored,
deltas received before a snapshot (or while one is being fetched) are
buffered and replayed on top of it, and any other nonce means updates were
missed: the copy is marked stale and must be rebuilt from a fresh snapshot.
"""

from __future__ import annotations

import logging
from collections import deque
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List

from bitvavo_client.errors import ProtocolError, StaleBookError

LOGGER = logging.getLogger(__name__)


class BookPhase(str, Enum):
    AWAITING_SNAPSHOT = "awaiting_snapshot"
    LIVE = "live"
    STALE = "stale"
    RESYNCING = "resyncing"


class BookUpdateOutcome(str, Enum):
    APPLIED = "applied"
    BUFFERED = "buffered"
    IGNORED = "ignored"
    GAP = "gap"


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ProtocolError(f"invalid book level value {value!r}") from exc


def _nonce(payload: Dict[str, Any]) -> int:
    try:
        return int(payload["nonce"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ProtocolError("book payload without integer nonce", payload) from exc


class LocalBook:
    def __init__(self, market: str, buffer_limit: int = 1000) -> None:
        self.market = market
        self.phase = BookPhase.AWAITING_SNAPSHOT
        self.nonce = -1
        self.last_gap: StaleBookError | None = None
        self._bids: Dict[str, str] = {}
        self._asks: Dict[str, str] = {}
        self._buffer: deque[Dict[str, Any]] = deque(maxlen=max(1, buffer_limit))

    @property
    def is_live(self) -> bool:
        return self.phase is BookPhase.LIVE

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def apply_snapshot(self, payload: Dict[str, Any]) -> BookUpdateOutcome:
        """Replace the copy with a snapshot and replay buffered deltas.

        Returns GAP when a buffered delta does not follow the snapshot,
        otherwise APPLIED.
        """
        nonce = _nonce(payload)
        self._bids = {}
        self._asks = {}
        self._merge_levels(self._bids, payload.get("bids") or [])
        self._merge_levels(self._asks, payload.get("asks") or [])
        self.nonce = nonce
        self.phase = BookPhase.LIVE
        self.last_gap = None

        pending = sorted(self._buffer, key=_nonce)
        self._buffer.clear()
        for index, delta in enumerate(pending):
            outcome = self.apply_update(delta)
            if outcome is BookUpdateOutcome.GAP:
                # The gap delta is already buffered; keep the rest for the next snapshot.
                self._buffer.extend(pending[index + 1 :])
                return outcome
        return BookUpdateOutcome.APPLIED

    def apply_update(self, payload: Dict[str, Any]) -> BookUpdateOutcome:
        nonce = _nonce(payload)
        if self.phase is not BookPhase.LIVE:
            self._buffer.append(payload)
            return BookUpdateOutcome.BUFFERED
        if nonce <= self.nonce:
            return BookUpdateOutcome.IGNORED
        expected = self.nonce + 1
        if nonce != expected:
            self.phase = BookPhase.STALE
            self.last_gap = StaleBookError(self.market, expected, nonce)
            self._buffer.append(payload)
            return BookUpdateOutcome.GAP

        self._merge_levels(self._bids, payload.get("bids") or [])
        self._merge_levels(self._asks, payload.get("asks") or [])
        self.nonce = nonce
        return BookUpdateOutcome.APPLIED

    def mark_resyncing(self) -> None:
        self.phase = BookPhase.RESYNCING

    def bids(self) -> List[List[str]]:
        return [[price, self._bids[price]] for price in sorted(self._bids, key=_decimal, reverse=True)]

    def asks(self) -> List[List[str]]:
        return [[price, self._asks[price]] for price in sorted(self._asks, key=_decimal)]

    def best_bid(self) -> List[str] | None:
        levels = self.bids()
        return levels[0] if levels else None

    def best_ask(self) -> List[str] | None:
        levels = self.asks()
        return levels[0] if levels else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market": self.market,
            "nonce": self.nonce,
            "bids": self.bids(),
            "asks": self.asks(),
        }

    @staticmethod
    def _merge_levels(side: Dict[str, str], levels: Any) -> None:
        for level in levels:
            if not isinstance(level, (list, tuple)) or len(level) < 2:
                raise ProtocolError(f"invalid book level {level!r}")
            price, size = str(level[0]), str(level[1])
            _decimal(price)
            if _decimal(size) == 0:
                side.pop(price, None)
            else:
                side[price] = size
