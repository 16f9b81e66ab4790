"""LockGate client: REST API, heartbeat, realtime channel and lock facade."""

from lockgate.client.api import LockApiClient
from lockgate.client.channel import (
    AUTH_FAILED_CLOSE_CODE,
    RealtimeChannel,
    TransportClosed,
    WebSocketTransport,
    websocket_connect,
)
from lockgate.client.errors import (
    ChannelAuthFailed,
    LockAuthError,
    LockClientError,
    LockServiceUnavailable,
    LockTransportError,
)
from lockgate.client.facade import LockClient, new_session_id
from lockgate.client.heartbeat import HeartbeatCoordinator

__all__ = [
    "AUTH_FAILED_CLOSE_CODE",
    "ChannelAuthFailed",
    "HeartbeatCoordinator",
    "LockApiClient",
    "LockAuthError",
    "LockClient",
    "LockClientError",
    "LockServiceUnavailable",
    "LockTransportError",
    "RealtimeChannel",
    "TransportClosed",
    "WebSocketTransport",
    "new_session_id",
]
