"""Request signing for authenticated REST calls and the socket handshake.

The signed payload is ``timestamp + METHOD + "/v2" + path + body`` and the
signature is the lowercase hex HMAC-SHA256 of it, keyed by the API secret.
The server recomputes the same string, so the concatenation order and the
exact path/body text must match what goes on the wire.
"""

from __future__ import annotations

import logging
import time

from cryptography.hazmat.primitives import hashes, hmac

from bitvavo_client.errors import ConfigurationError
from bitvavo_client.models import Credentials

LOGGER = logging.getLogger(__name__)

API_VERSION_PREFIX = "/v2"
WEBSOCKET_SIGNING_PATH = "/websocket"

ACCESS_KEY_HEADER = "Bitvavo-Access-Key"
ACCESS_SIGNATURE_HEADER = "Bitvavo-Access-Signature"
ACCESS_TIMESTAMP_HEADER = "Bitvavo-Access-Timestamp"
ACCESS_WINDOW_HEADER = "Bitvavo-Access-Window"


def now_ms() -> int:
    return int(time.time() * 1000)


def create_signature(secret: str, timestamp_ms: int, method: str, path: str, body: str = "") -> str:
    payload = f"{timestamp_ms}{method.upper()}{API_VERSION_PREFIX}{path}{body}".encode("utf-8")
    mac = hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
    mac.update(payload)
    return mac.finalize().hex()


class Signer:
    def __init__(self, credentials: Credentials) -> None:
        self._credentials = credentials

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    @property
    def can_sign(self) -> bool:
        return self._credentials.present

    def sign(self, timestamp_ms: int, method: str, path: str, body: str = "") -> str:
        """Return the signature, or ``""`` when key or secret is missing.

        An empty signature means the private request must not be sent.
        """
        if not self._credentials.present:
            LOGGER.error("api key or secret has not been set; cannot sign %s %s", method, path)
            return ""
        return create_signature(self._credentials.secret, timestamp_ms, method, path, body)

    def auth_headers(
        self,
        method: str,
        path: str,
        body: str = "",
        timestamp_ms: int | None = None,
    ) -> dict[str, str]:
        ts_ms = now_ms() if timestamp_ms is None else timestamp_ms
        signature = self.sign(ts_ms, method, path, body)
        if not signature:
            raise ConfigurationError("api key and secret are required for private endpoints")
        return {
            ACCESS_KEY_HEADER: self._credentials.key,
            ACCESS_SIGNATURE_HEADER: signature,
            ACCESS_TIMESTAMP_HEADER: str(ts_ms),
            ACCESS_WINDOW_HEADER: str(self._credentials.access_window_ms),
        }

    def authenticate_action(self, timestamp_ms: int | None = None) -> dict[str, object]:
        """Build the socket ``authenticate`` action."""
        ts_ms = now_ms() if timestamp_ms is None else timestamp_ms
        signature = self.sign(ts_ms, "GET", WEBSOCKET_SIGNING_PATH, "")
        if not signature:
            raise ConfigurationError("api key and secret are required to authenticate the socket")
        return {
            "action": "authenticate",
            "key": self._credentials.key,
            "signature": signature,
            "timestamp": ts_ms,
            "window": self._credentials.access_window_ms,
        }
