"""API request/response schemas."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from lockgate.models import Holder, Lease, LockInfo


# ============================================================================
# Shared schemas
# ============================================================================


class HolderRequest(BaseModel):
    """Fields identifying the caller's holder and session."""

    record_id: str = Field(..., min_length=1, max_length=255, description="Protected record")
    holder_id: str = Field(..., min_length=1, max_length=255, description="Acquiring user")
    session_id: str = Field(..., min_length=1, max_length=255, description="Browser tab / client session")

    def holder(self, display_name: str = "") -> Holder:
        return Holder(holder_id=self.holder_id, session_id=self.session_id, display_name=display_name)


# ============================================================================
# Lock schemas
# ============================================================================


class AcquireLockRequest(HolderRequest):
    """Acquire lock request."""

    display_name: str = Field(..., min_length=1, max_length=255)
    record_type: Optional[str] = Field(None, max_length=64, description="customer_order, internal_order, ...")


class AcquireLockResponse(BaseModel):
    """Acquire lock response. ``granted=False`` is a normal outcome."""

    granted: bool
    lease: Optional[Lease] = None
    held_by: Optional[str] = None
    held_by_id: Optional[str] = None
    acquired_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class RenewLockRequest(HolderRequest):
    """Renew lock request."""


class RenewLockResponse(BaseModel):
    """Renew lock response."""

    renewed: bool
    expires_at: Optional[datetime] = None


class ReleaseLockRequest(HolderRequest):
    """Release lock request."""


class ReleaseLockResponse(BaseModel):
    """Release lock response."""

    released: bool


class HeartbeatRequest(BaseModel):
    """Batched renewal request for every lease held by one session."""

    holder_id: str = Field(..., min_length=1, max_length=255)
    session_id: str = Field(..., min_length=1, max_length=255)
    record_ids: list[str] = Field(default_factory=list, max_length=200)


class HeartbeatResponse(BaseModel):
    """Heartbeat response."""

    renewed: list[str]
    lost: list[str]


class QueryLocksRequest(BaseModel):
    """Batch lock lookup."""

    record_ids: list[str] = Field(..., min_length=1)


class QueryLocksResponse(BaseModel):
    """Lock per requested record (null when unlocked)."""

    locks: dict[str, Optional[LockInfo]]


class ListLocksResponse(BaseModel):
    """Live locks of the tenant."""

    locks: list[LockInfo]


# ============================================================================
# System schemas
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str


class MetricsResponse(BaseModel):
    """Metrics snapshot response."""

    counters: dict[str, float]
    gauges: dict[str, float]
    histograms: dict[str, dict[str, Any]]
