"""Lock events - low-latency hints fanned out to viewers of a record."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from lockgate.models.enums import LockEventType, ReleaseReason
from lockgate.models.lease import Lease
from lockgate.utils.time import utc_now


class LockEvent(BaseModel):
    """A lock state change for one record."""

    event: LockEventType
    tenant_id: UUID
    record_id: str
    data: dict[str, Any]
    emitted_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def acquired(cls, lease: Lease) -> "LockEvent":
        return cls(
            event=LockEventType.LOCK_ACQUIRED,
            tenant_id=lease.tenant_id,
            record_id=lease.record_id,
            data={
                "record_id": lease.record_id,
                "record_type": lease.record_type,
                "holder_id": lease.holder_id,
                "holder_display_name": lease.holder_display_name,
                "session_id": lease.session_id,
                "acquired_at": lease.acquired_at.isoformat(),
                "expires_at": lease.expires_at.isoformat(),
            },
        )

    @classmethod
    def released(
        cls,
        tenant_id: UUID,
        record_id: str,
        reason: ReleaseReason = ReleaseReason.RELEASED,
        holder_id: str | None = None,
        session_id: str | None = None,
    ) -> "LockEvent":
        """Release of the lease owned by ``holder_id`` / ``session_id``."""
        return cls(
            event=LockEventType.LOCK_RELEASED,
            tenant_id=tenant_id,
            record_id=record_id,
            data={
                "record_id": record_id,
                "reason": reason.value,
                "holder_id": holder_id,
                "session_id": session_id,
            },
        )

    @classmethod
    def lease_released(cls, lease: Lease, reason: ReleaseReason) -> "LockEvent":
        return cls.released(
            lease.tenant_id,
            lease.record_id,
            reason,
            holder_id=lease.holder_id,
            session_id=lease.session_id,
        )

    def to_frame(self) -> dict[str, Any]:
        """Wire frame for the realtime channel."""
        return {"event": self.event.value, "data": self.data}
