"""Lease model - an editor's exclusive claim on a record."""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from lockgate.utils.time import utc_now


@dataclass(frozen=True)
class Holder:
    """Identity of the principal asking for a lease."""

    holder_id: str
    session_id: str
    display_name: str = ""

    def matches(self, holder_id: str, session_id: str, cross_session: bool = True) -> bool:
        """Check whether a stored (holder_id, session_id) pair belongs to this holder."""
        if holder_id != self.holder_id:
            return False
        return cross_session or session_id == self.session_id


class Lease(BaseModel):
    """Represents exclusive, time-bounded editing rights over one record."""

    tenant_id: UUID
    record_id: str
    record_type: str | None = None
    holder_id: str
    holder_display_name: str
    session_id: str
    acquired_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    renewal_count: int = 0

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if lease has expired."""
        if now is None:
            now = utc_now()
        return now >= self.expires_at

    def to_info(self) -> "LockInfo":
        return LockInfo(
            record_id=self.record_id,
            record_type=self.record_type,
            holder_id=self.holder_id,
            holder_display_name=self.holder_display_name,
            session_id=self.session_id,
            acquired_at=self.acquired_at,
            expires_at=self.expires_at,
            last_activity_at=self.last_activity_at,
        )


class LockInfo(BaseModel):
    """Lock information shown to viewers ("locked by ..." badges)."""

    record_id: str
    record_type: str | None = None
    holder_id: str
    holder_display_name: str
    session_id: str
    acquired_at: datetime
    expires_at: datetime
    last_activity_at: datetime | None = None

    def describe(self) -> str:
        """Human-readable holder line for conflict messages."""
        since = self.acquired_at.strftime("%H:%M")
        return f"Locked by {self.holder_display_name} since {since}"


class AcquireResult(BaseModel):
    """Outcome of an acquire attempt. A conflict is a value, not an error."""

    granted: bool
    lease: Lease | None = None
    held_by: str | None = None
    held_by_id: str | None = None
    acquired_at: datetime | None = None
    expires_at: datetime | None = None

    @classmethod
    def grant(cls, lease: Lease) -> "AcquireResult":
        return cls(granted=True, lease=lease, expires_at=lease.expires_at)

    @classmethod
    def conflict(cls, existing: Lease) -> "AcquireResult":
        return cls(
            granted=False,
            held_by=existing.holder_display_name,
            held_by_id=existing.holder_id,
            acquired_at=existing.acquired_at,
            expires_at=existing.expires_at,
        )


class HeartbeatResult(BaseModel):
    """Batched renewal outcome for one session."""

    renewed: list[str] = []
    lost: list[str] = []
