"""Typed error hierarchy shared by the REST and streaming transports.

Callers can tell configuration mistakes (never retried) apart from
transport failures, exchange-side throttling and malformed frames.
"""

from __future__ import annotations

from typing import Any

RATE_LIMIT_ERROR_CODE = 105


class BitvavoError(Exception):
    """Base class for all client errors."""


class ConfigurationError(BitvavoError):
    """Credentials missing for an operation that requires them."""


class TransportError(BitvavoError):
    """Network or socket failure, including a closed connection."""


class RateLimitExceeded(BitvavoError):
    """Exchange-signalled throttling, or a call refused by the governor."""

    def __init__(self, message: str = "rate limit exceeded", reset_at_ms: int = 0) -> None:
        super().__init__(message)
        self.reset_at_ms = reset_at_ms


class ApiError(BitvavoError):
    """Error reply carrying an exchange error code."""

    def __init__(self, error_code: int, message: str) -> None:
        super().__init__(f"[{error_code}] {message}")
        self.error_code = error_code
        self.message = message


class ProtocolError(BitvavoError):
    """Inbound frame that could not be decoded or classified."""

    def __init__(self, message: str, frame: Any = None) -> None:
        super().__init__(message)
        self.frame = frame


class StaleBookError(BitvavoError):
    """Order-book delta whose nonce does not follow the local copy."""

    def __init__(self, market: str, expected_nonce: int, received_nonce: int) -> None:
        super().__init__(
            f"book {market} out of sequence: expected nonce {expected_nonce}, got {received_nonce}"
        )
        self.market = market
        self.expected_nonce = expected_nonce
        self.received_nonce = received_nonce


def error_from_payload(payload: dict[str, Any]) -> BitvavoError:
    """Build the typed error for a decoded ``{"errorCode", "error"}`` body."""
    try:
        code = int(payload.get("errorCode"))
    except (TypeError, ValueError):
        code = -1
    message = str(payload.get("error") or "")
    if code == RATE_LIMIT_ERROR_CODE:
        return RateLimitExceeded(message or "rate limit exceeded")
    return ApiError(code, message)
