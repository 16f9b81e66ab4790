"""LockGate engine - lock manager and its errors."""

from lockgate.engine.core import LockManager
from lockgate.engine.errors import (
    InvalidRequest,
    LockContention,
    LockGateError,
    StorageUnavailable,
    UnauthorizedError,
)
from lockgate.engine.publisher import EventPublisher, NullPublisher

__all__ = [
    "EventPublisher",
    "InvalidRequest",
    "LockContention",
    "LockGateError",
    "LockManager",
    "NullPublisher",
    "StorageUnavailable",
    "UnauthorizedError",
]
