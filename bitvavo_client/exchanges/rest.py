from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import urlencode

import httpx

from bitvavo_client.config import DEFAULT_REST_URL
from bitvavo_client.errors import (
    BitvavoError,
    ConfigurationError,
    ProtocolError,
    RateLimitExceeded,
    TransportError,
    error_from_payload,
)
from bitvavo_client.framework.rate_governor import RateLimitGovernor
from bitvavo_client.framework.signer import Signer
from bitvavo_client.models import Credentials

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestResult:
    """Outcome of one REST exchange; failures are carried, not raised."""

    status_code: int
    payload: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)
    error: BitvavoError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.payload


class RestTransport:
    def __init__(
        self,
        credentials: Credentials,
        governor: RateLimitGovernor,
        base_url: str = DEFAULT_REST_URL,
        timeout_seconds: float = 10.0,
        rate_limit_wait: bool = True,
        rate_limit_max_wait_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._signer = Signer(credentials)
        self._governor = governor
        self._rate_limit_wait = rate_limit_wait
        self._rate_limit_max_wait_seconds = rate_limit_max_wait_seconds
        self._client = client or httpx.AsyncClient(
            base_url=base_url or DEFAULT_REST_URL,
            timeout=timeout_seconds,
        )

    @property
    def governor(self) -> RateLimitGovernor:
        return self._governor

    @property
    def has_credentials(self) -> bool:
        return self._signer.can_sign

    async def execute(
        self,
        method: str,
        path: str,
        query: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
        private: bool = False,
    ) -> RestResult:
        method = method.upper()
        request_path = self.build_path(path, query)
        body_text = self.encode_body(body)

        if private and not self._signer.can_sign:
            LOGGER.error("bitvavo %s %s requires api key and secret; request not sent", method, request_path)
            return RestResult(
                status_code=0,
                error=ConfigurationError("api key and secret are required for private endpoints"),
            )

        admitted = await self._governor.acquire(
            wait=self._rate_limit_wait,
            timeout=self._rate_limit_max_wait_seconds,
        )
        if not admitted:
            state = self._governor.state
            LOGGER.warning(
                "bitvavo %s %s refused: rate limit budget exhausted until %d",
                method,
                request_path,
                state.reset_at_ms,
            )
            return RestResult(
                status_code=0,
                error=RateLimitExceeded("rate limit budget exhausted", reset_at_ms=state.reset_at_ms),
            )

        headers: dict[str, str] = {}
        if self._signer.can_sign:
            headers.update(self._signer.auth_headers(method, request_path, body_text))
        if body_text:
            headers["Content-Type"] = "application/json"

        try:
            response = await self._client.request(
                method,
                request_path,
                content=body_text.encode("utf-8") if body_text else None,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            LOGGER.warning("bitvavo %s %s failed: %s", method, request_path, exc)
            return RestResult(status_code=0, error=TransportError(f"{method} {request_path} failed: {exc}"))

        return self._build_result(method, request_path, response)

    def _build_result(self, method: str, request_path: str, response: httpx.Response) -> RestResult:
        if response.is_success:
            self._governor.update_from_headers(response.headers)

        try:
            payload = response.json() if response.content else None
        except ValueError:
            payload = None
            if response.is_success:
                LOGGER.warning("bitvavo %s %s returned an undecodable body", method, request_path)
                return RestResult(
                    status_code=response.status_code,
                    headers=response.headers,
                    error=ProtocolError("undecodable response body", response.text),
                )

        if isinstance(payload, dict) and "errorCode" in payload:
            self._governor.record_error(payload)
            error = error_from_payload(payload)
            if isinstance(error, RateLimitExceeded):
                error.reset_at_ms = self._governor.state.reset_at_ms
            LOGGER.warning("bitvavo %s %s error: %s", method, request_path, error)
            return RestResult(
                status_code=response.status_code,
                payload=payload,
                headers=response.headers,
                error=error,
            )

        if not response.is_success:
            LOGGER.warning("bitvavo %s %s returned HTTP %d", method, request_path, response.status_code)
            return RestResult(
                status_code=response.status_code,
                payload=payload,
                headers=response.headers,
                error=TransportError(f"{method} {request_path} returned HTTP {response.status_code}"),
            )

        return RestResult(status_code=response.status_code, payload=payload, headers=response.headers)

    @staticmethod
    def build_path(path: str, query: Mapping[str, Any] | None = None) -> str:
        """Encode ``query`` into the path; the result is exactly what gets signed."""
        if not path.startswith("/"):
            path = "/" + path
        pairs = [(name, value) for name, value in (query or {}).items() if value is not None and value != ""]
        if not pairs:
            return path
        return f"{path}?{urlencode(pairs)}"

    @staticmethod
    def encode_body(body: Mapping[str, Any] | None) -> str:
        if not body:
            return ""
        return json.dumps(body, separators=(",", ":"))

    async def aclose(self) -> None:
        await self._client.aclose()
