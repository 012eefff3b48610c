"""Subscription table keyed by (channel, market, sub-key).

The socket session consults the registry for every subscription event and
the public subscribe/unsubscribe surface mutates it. Entries outlive a
disconnect so a reconnect can resubscribe them. The table is guarded by a
lock; callbacks always run outside the lock.
"""

from __future__ import annotations

import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

LOGGER = logging.getLogger(__name__)

SubscriptionKey = Tuple[str, str, Optional[str]]
Callback = Callable[[Any], Any]


@dataclass(frozen=True)
class Subscription:
    channel: str
    market: str
    sub_key: str | None
    callback: Callback

    @property
    def key(self) -> SubscriptionKey:
        return (self.channel, self.market, self.sub_key)


class SubscriptionRegistry:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: Dict[SubscriptionKey, Subscription] = {}

    def add(
        self,
        channel: str,
        market: str,
        callback: Callback,
        sub_key: str | None = None,
    ) -> Subscription:
        """Register a callback; re-adding an existing key replaces it."""
        subscription = Subscription(channel=channel, market=market, sub_key=sub_key, callback=callback)
        with self._lock:
            replaced = subscription.key in self._entries
            self._entries[subscription.key] = subscription
        if replaced:
            LOGGER.debug("replaced subscription %s", subscription.key)
        return subscription

    def remove(self, channel: str, market: str, sub_key: str | None = None) -> bool:
        with self._lock:
            return self._entries.pop((channel, market, sub_key), None) is not None

    def get(self, channel: str, market: str, sub_key: str | None = None) -> Subscription | None:
        with self._lock:
            return self._entries.get((channel, market, sub_key))

    def match(self, channel: str, market: str, sub_key: str | None = None) -> List[Subscription]:
        with self._lock:
            entry = self._entries.get((channel, market, sub_key))
        return [entry] if entry is not None else []

    async def dispatch(
        self,
        channel: str,
        market: str,
        payload: Any,
        sub_key: str | None = None,
    ) -> int:
        """Invoke every matching callback; returns how many ran.

        Coroutine callbacks are awaited. A failing callback is logged and
        never propagates to the caller (the receive loop).
        """
        matched = self.match(channel, market, sub_key)
        if not matched:
            LOGGER.debug("no subscription for %s/%s/%s; dropping event", channel, market, sub_key)
            return 0
        for subscription in matched:
            try:
                result = subscription.callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOGGER.exception("subscription callback failed for %s", subscription.key)
        return len(matched)

    def keys(self) -> List[SubscriptionKey]:
        with self._lock:
            return list(self._entries)

    def entries(self, channel: str | None = None) -> List[Subscription]:
        with self._lock:
            values = list(self._entries.values())
        if channel is None:
            return values
        return [entry for entry in values if entry.channel == channel]

    def channels(self) -> List[str]:
        with self._lock:
            return sorted({channel for channel, _, _ in self._entries})

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
