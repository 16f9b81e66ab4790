"""SQLAlchemy table definitions."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from lockgate.db.base import Base


class LeaseTable(Base):
    """Record leases - one live row per (tenant, record)."""

    __tablename__ = "record_leases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    record_id: Mapped[str] = mapped_column(String(255), nullable=False)
    record_type: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Holder
    holder_id: Mapped[str] = mapped_column(String(255), nullable=False)
    holder_display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Timestamps
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    renewal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        # Single active lease per record; the conditional insert relies on it
        UniqueConstraint("tenant_id", "record_id", name="uq_record_lease"),
        # Index for expiry sweeps
        Index("idx_record_leases_expires", "expires_at"),
        # Index for holder lookups (heartbeats, disconnect cleanup)
        Index("idx_record_leases_holder", "tenant_id", "holder_id"),
    )
