"""LockGate enumerations."""

from enum import Enum


class LockEventType(str, Enum):
    """Lock lifecycle events pushed over the realtime channel."""

    LOCK_ACQUIRED = "lock_acquired"
    LOCK_RELEASED = "lock_released"


class ReleaseReason(str, Enum):
    """Why a lease stopped existing."""

    RELEASED = "released"
    EXPIRED = "expired"
    DISCONNECTED = "disconnected"


class ConnectionState(str, Enum):
    """Realtime channel connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    AUTH_FAILED = "auth_failed"

    def is_terminal(self) -> bool:
        """Auth failure stops the reconnect loop for good."""
        return self is ConnectionState.AUTH_FAILED


class ChannelErrorCode(str, Enum):
    """Error codes sent in realtime `error` frames."""

    AUTH_FAILED = "AUTH_FAILED"
    INVALID_EVENT = "INVALID_EVENT"
    SERVER_ERROR = "SERVER_ERROR"
