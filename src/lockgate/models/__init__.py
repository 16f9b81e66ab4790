"""LockGate data models."""

from lockgate.models.enums import (
    ChannelErrorCode,
    ConnectionState,
    LockEventType,
    ReleaseReason,
)
from lockgate.models.events import LockEvent
from lockgate.models.lease import AcquireResult, HeartbeatResult, Holder, Lease, LockInfo

__all__ = [
    "AcquireResult",
    "ChannelErrorCode",
    "ConnectionState",
    "HeartbeatResult",
    "Holder",
    "Lease",
    "LockEvent",
    "LockEventType",
    "LockInfo",
    "ReleaseReason",
]
