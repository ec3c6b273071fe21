"""
Relay connectors for Shroud.
Each connector implements the RelayConnector interface; RelayPool fans out across them.
"""

from shroud.errors import ValidationFailure
from shroud.relays.base import PublishAck, RelayConnector
from shroud.relays.memory import MemoryRelay
from shroud.relays.pool import PublishResult, RelayPool
from shroud.relays.websocket import WebSocketRelay

# Registry of connectors by URL scheme
CONNECTORS = {
    "ws": WebSocketRelay,
    "wss": WebSocketRelay,
    "memory": MemoryRelay,
}


def connector_for(url: str, timeout: float = 10.0) -> RelayConnector:
    """Build the connector registered for a URL's scheme."""
    scheme = url.split("://", 1)[0].lower()
    if scheme not in CONNECTORS:
        raise ValidationFailure(f"No relay connector for scheme '{scheme}'", field="relay", value=url)
    if CONNECTORS[scheme] is MemoryRelay:
        return MemoryRelay(url)
    return CONNECTORS[scheme](url, timeout=timeout)


__all__ = [
    "CONNECTORS",
    "MemoryRelay",
    "PublishAck",
    "PublishResult",
    "RelayConnector",
    "RelayPool",
    "WebSocketRelay",
    "connector_for",
]
