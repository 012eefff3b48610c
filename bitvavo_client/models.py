from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_ACCESS_WINDOW_MS = 10000


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    CLOSING = "closing"
    CLOSED = "closed"


class Channel(str, Enum):
    TICKER = "ticker"
    TICKER_24H = "ticker24h"
    TRADES = "trades"
    CANDLES = "candles"
    BOOK = "book"
    ACCOUNT = "account"


@dataclass(frozen=True)
class Credentials:
    key: str = ""
    secret: str = ""
    access_window_ms: int = DEFAULT_ACCESS_WINDOW_MS

    @property
    def present(self) -> bool:
        return bool(self.key and self.secret)
