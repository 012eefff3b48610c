"""Server-driven rate-limit governor shared by REST and socket transports.

The exchange reports the remaining request budget and the epoch-millis at
which it resets, either through response headers or, once the budget is
blown, through an error reply (code 105) whose message embeds the ban
expiry. The governor stores that state, gates outgoing calls, and restores
the default budget from a single background timer when the deadline passes.

Usage::

    gov = RateLimitGovernor()
    # Before each request:
    if not await gov.acquire(wait=True, timeout=30.0):
        ...  # refused, budget still exhausted
    # After each successful response:
    gov.update_from_headers(response.headers)
    # On an error body:
    gov.record_error(payload)
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from bitvavo_client.errors import RATE_LIMIT_ERROR_CODE

LOGGER = logging.getLogger(__name__)

_BAN_EXPIRY_PATTERN = re.compile(r"\bat\s+(\d+)")


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitGovernorConfig:
    """Configuration for the rate-limit governor.

    Parameters
    ----------
    default_budget:
        Budget restored when the reset deadline passes. Default 1000.
    remaining_headers:
        Response header names carrying the remaining budget, tried in
        order (case-insensitive).
    reset_headers:
        Response header names carrying the reset epoch millis.
    ban_fallback_ms:
        Ban duration assumed when a rate-limit error message carries no
        parsable expiry. Default 60000.
    """

    default_budget: int = 1000
    remaining_headers: tuple[str, ...] = ("Bitvavo-Ratelimit-Remaining", "Ratelimit-Remaining")
    reset_headers: tuple[str, ...] = ("Bitvavo-Ratelimit-ResetAt", "Ratelimit-ResetAt")
    ban_fallback_ms: int = 60000


# ---------------------------------------------------------------------------
# State snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitState:
    remaining: int
    reset_at_ms: int
    reset_timer_active: bool


@dataclass(frozen=True)
class GovernorSnapshot:
    """Snapshot of governor state for monitoring."""

    remaining: int
    reset_at_ms: int
    reset_timer_active: bool
    bans_observed: int
    timers_started: int
    resets_applied: int


# ---------------------------------------------------------------------------
# Governor
# ---------------------------------------------------------------------------


class RateLimitGovernor:
    """Remaining-budget counter with a single auto-reset timer.

    One instance is owned by a client and handed to its REST transport
    and socket sessions; independent clients never share budget state.
    """

    def __init__(
        self,
        config: RateLimitGovernorConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or RateLimitGovernorConfig()
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._remaining = self._config.default_budget
        self._reset_at_ms = 0
        self._timer_active = False
        self._timer_task: asyncio.Task[None] | None = None
        # Created on first wait and rebuilt when the governor moves to another loop.
        self._budget_available: asyncio.Event | None = None
        self._event_loop: asyncio.AbstractEventLoop | None = None
        self._bans_observed = 0
        self._timers_started = 0
        self._resets_applied = 0

    @property
    def config(self) -> RateLimitGovernorConfig:
        return self._config

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # -- queries ------------------------------------------------------------

    def remaining_budget(self) -> int:
        with self._lock:
            return self._remaining

    def is_exhausted(self) -> bool:
        return self.remaining_budget() <= 0

    @property
    def state(self) -> RateLimitState:
        with self._lock:
            return RateLimitState(
                remaining=self._remaining,
                reset_at_ms=self._reset_at_ms,
                reset_timer_active=self._timer_active,
            )

    def seconds_until_reset(self) -> float:
        with self._lock:
            return max(0.0, (self._reset_at_ms - self._now_ms()) / 1000.0)

    def snapshot(self) -> GovernorSnapshot:
        with self._lock:
            return GovernorSnapshot(
                remaining=self._remaining,
                reset_at_ms=self._reset_at_ms,
                reset_timer_active=self._timer_active,
                bans_observed=self._bans_observed,
                timers_started=self._timers_started,
                resets_applied=self._resets_applied,
            )

    # -- inputs -------------------------------------------------------------

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Record ``remaining``/``resetAt`` from a successful response."""
        lowered = {str(name).lower(): value for name, value in headers.items()}
        remaining = self._header_int(lowered, self._config.remaining_headers)
        reset_at = self._header_int(lowered, self._config.reset_headers)

        with self._lock:
            if remaining is not None:
                self._remaining = max(0, remaining)
                self._sync_available_locked()
            if reset_at is None:
                return
            self._reset_at_ms = reset_at
            self._schedule_reset_locked()

    def record_error(self, payload: Mapping[str, Any]) -> bool:
        """Absorb an error body. Returns True when it was a rate-limit ban."""
        try:
            code = int(payload.get("errorCode"))
        except (TypeError, ValueError):
            return False
        if code != RATE_LIMIT_ERROR_CODE:
            return False

        message = str(payload.get("error") or "")
        reset_at = self._parse_ban_expiry(message)
        with self._lock:
            self._bans_observed += 1
            if reset_at is None:
                LOGGER.warning("rate limit ban without parsable expiry: %s", message)
                reset_at = self._now_ms() + self._config.ban_fallback_ms
            self._remaining = 0
            self._reset_at_ms = max(self._reset_at_ms, reset_at)
            self._sync_available_locked()
            LOGGER.debug(
                "rate limit ban observed; waiting %.1fs until it is lifted",
                max(0, self._reset_at_ms - self._now_ms()) / 1000.0,
            )
            self._schedule_reset_locked()
        return True

    # -- gate ---------------------------------------------------------------

    async def acquire(self, wait: bool = True, timeout: float | None = None) -> bool:
        """Admit one outgoing call.

        Returns True immediately while budget remains. When the budget is
        exhausted, either waits for the reset (``wait=True``, bounded by
        ``timeout``) or refuses at once by returning False.
        """
        with self._lock:
            if self._remaining <= 0 and not self._timer_active and self._reset_at_ms <= self._now_ms():
                # Deadline passed without a timer (no loop at the time).
                self._apply_reset_locked()
            if self._remaining > 0:
                return True
            if not wait:
                return False
            available = self._available_event_locked()
        try:
            await asyncio.wait_for(available.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self.remaining_budget() > 0

    async def aclose(self) -> None:
        with self._lock:
            task = self._timer_task
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # -- internals ----------------------------------------------------------

    def _schedule_reset_locked(self) -> None:
        if self._timer_active:
            return
        if self._reset_at_ms - self._now_ms() <= 0:
            self._apply_reset_locked()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("no running loop; rate limit reset will be applied lazily")
            return
        self._timer_active = True
        self._timers_started += 1
        self._timer_task = loop.create_task(self._reset_when_due())

    async def _reset_when_due(self) -> None:
        try:
            while True:
                with self._lock:
                    delay = (self._reset_at_ms - self._now_ms()) / 1000.0
                if delay <= 0:
                    break
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            with self._lock:
                self._timer_active = False
                self._timer_task = None
            raise
        with self._lock:
            self._timer_active = False
            self._timer_task = None
            self._apply_reset_locked()

    def _available_event_locked(self) -> asyncio.Event:
        loop = asyncio.get_running_loop()
        if self._budget_available is None or self._event_loop is not loop:
            self._budget_available = asyncio.Event()
            self._event_loop = loop
            if self._remaining > 0:
                self._budget_available.set()
        return self._budget_available

    def _apply_reset_locked(self) -> None:
        self._remaining = self._config.default_budget
        self._resets_applied += 1
        if self._budget_available is not None:
            self._budget_available.set()
        LOGGER.debug("rate limit window passed; budget reset to %d", self._remaining)

    def _sync_available_locked(self) -> None:
        if self._budget_available is None:
            return
        if self._remaining > 0:
            self._budget_available.set()
        else:
            self._budget_available.clear()

    @staticmethod
    def _header_int(headers: Mapping[str, str], names: tuple[str, ...]) -> int | None:
        for name in names:
            raw = headers.get(name.lower())
            if raw is None:
                continue
            try:
                return int(str(raw).strip())
            except ValueError:
                LOGGER.debug("ignoring non-integer rate limit header %s=%r", name, raw)
        return None

    @staticmethod
    def _parse_ban_expiry(message: str) -> int | None:
        matches = _BAN_EXPIRY_PATTERN.findall(message)
        if not matches:
            return None
        return int(matches[-1])
