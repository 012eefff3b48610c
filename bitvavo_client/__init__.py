from .client import BitvavoClient, BitvavoWebSocket
from .config import BitvavoSettings, load_settings
from .errors import (
    ApiError,
    BitvavoError,
    ConfigurationError,
    ProtocolError,
    RateLimitExceeded,
    StaleBookError,
    TransportError,
)
from .models import Channel, Credentials, SessionState

__all__ = [
    "ApiError",
    "BitvavoClient",
    "BitvavoError",
    "BitvavoSettings",
    "BitvavoWebSocket",
    "Channel",
    "ConfigurationError",
    "Credentials",
    "ProtocolError",
    "RateLimitExceeded",
    "SessionState",
    "StaleBookError",
    "TransportError",
    "load_settings",
]
