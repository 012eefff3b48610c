from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from bitvavo_client.models import DEFAULT_ACCESS_WINDOW_MS, Credentials

DEFAULT_REST_URL = "https://api.bitvavo.com/v2"
DEFAULT_WS_URL = "wss://ws.bitvavo.com/v2/"
RATE_LIMIT_POLICIES = ("wait", "refuse")


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_str(value: str | None, default: str) -> str:
    if value is None or not value.strip():
        return default
    return value.strip()


def _as_policy(value: str | None) -> str:
    policy = _as_str(value, "wait").lower()
    if policy not in RATE_LIMIT_POLICIES:
        raise ValueError(f"BITVAVO_RATE_LIMIT_POLICY must be one of {RATE_LIMIT_POLICIES}, got {policy!r}")
    return policy


@dataclass(frozen=True)
class BitvavoSettings:
    api_key: str = ""
    api_secret: str = ""
    access_window_ms: int = DEFAULT_ACCESS_WINDOW_MS
    rest_url: str = DEFAULT_REST_URL
    ws_url: str = DEFAULT_WS_URL
    debugging: bool = False
    log_level: str = "INFO"
    request_timeout_seconds: float = 10.0
    rate_limit_default: int = 1000
    # "wait" holds calls until the budget resets, "refuse" fails them at once.
    rate_limit_policy: str = "wait"
    rate_limit_max_wait_seconds: float = 60.0
    call_timeout_seconds: float = 10.0
    auth_timeout_seconds: float = 10.0
    private_retry_interval_seconds: float = 0.05
    close_grace_seconds: float = 2.0
    ping_interval_seconds: float = 20.0
    auto_reconnect: bool = False
    reconnect_delay_seconds: float = 2.0
    resubscribe_on_reconnect: bool = True

    @property
    def credentials(self) -> Credentials:
        return Credentials(
            key=self.api_key,
            secret=self.api_secret,
            access_window_ms=self.access_window_ms or DEFAULT_ACCESS_WINDOW_MS,
        )

    @property
    def rate_limit_wait(self) -> bool:
        return self.rate_limit_policy == "wait"


def load_settings() -> BitvavoSettings:
    load_dotenv(override=False)

    return BitvavoSettings(
        api_key=os.getenv("BITVAVO_API_KEY", "").strip(),
        api_secret=os.getenv("BITVAVO_API_SECRET", "").strip(),
        # Zero means "use the default window", same as an unset variable.
        access_window_ms=_as_int(os.getenv("BITVAVO_ACCESS_WINDOW_MS"), DEFAULT_ACCESS_WINDOW_MS)
        or DEFAULT_ACCESS_WINDOW_MS,
        rest_url=_as_str(os.getenv("BITVAVO_REST_URL"), DEFAULT_REST_URL),
        ws_url=_as_str(os.getenv("BITVAVO_WS_URL"), DEFAULT_WS_URL),
        debugging=_as_bool(os.getenv("BITVAVO_DEBUGGING"), False),
        log_level=_as_str(os.getenv("BITVAVO_LOG_LEVEL"), "INFO"),
        request_timeout_seconds=_as_float(os.getenv("BITVAVO_REQUEST_TIMEOUT_SECONDS"), 10.0),
        rate_limit_default=_as_int(os.getenv("BITVAVO_RATE_LIMIT_DEFAULT"), 1000),
        rate_limit_policy=_as_policy(os.getenv("BITVAVO_RATE_LIMIT_POLICY")),
        rate_limit_max_wait_seconds=_as_float(os.getenv("BITVAVO_RATE_LIMIT_MAX_WAIT_SECONDS"), 60.0),
        call_timeout_seconds=_as_float(os.getenv("BITVAVO_CALL_TIMEOUT_SECONDS"), 10.0),
        auth_timeout_seconds=_as_float(os.getenv("BITVAVO_AUTH_TIMEOUT_SECONDS"), 10.0),
        private_retry_interval_seconds=_as_float(
            os.getenv("BITVAVO_PRIVATE_RETRY_INTERVAL_SECONDS"),
            0.05,
        ),
        close_grace_seconds=_as_float(os.getenv("BITVAVO_CLOSE_GRACE_SECONDS"), 2.0),
        ping_interval_seconds=_as_float(os.getenv("BITVAVO_PING_INTERVAL_SECONDS"), 20.0),
        auto_reconnect=_as_bool(os.getenv("BITVAVO_AUTO_RECONNECT"), False),
        reconnect_delay_seconds=_as_float(os.getenv("BITVAVO_RECONNECT_DELAY_SECONDS"), 2.0),
        resubscribe_on_reconnect=_as_bool(os.getenv("BITVAVO_RESUBSCRIBE_ON_RECONNECT"), True),
    )
