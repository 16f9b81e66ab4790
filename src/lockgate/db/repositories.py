"""Database repositories for LockGate entities."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from lockgate.db.tables import LeaseTable
from lockgate.models import Holder, Lease
from lockgate.utils.time import Clock, ensure_utc, utc_now

leases_table = LeaseTable.__table__


@dataclass(frozen=True)
class CreateResult:
    """Outcome of a conditional lease insert.

    Exactly one of ``lease`` / ``conflict`` is set, except when the competing
    lease vanished between the insert and the read-back (caller retries).
    ``purged`` is an expired lease removed on the way in.
    """

    lease: Lease | None = None
    conflict: Lease | None = None
    purged: Lease | None = None

    @property
    def created(self) -> bool:
        return self.lease is not None


class LeaseRepository:
    """Repository for record leases (the lease store).

    Every mutation is a single conditional statement so that the database is
    the only ordering authority between competing holders.
    """

    def __init__(self, session: AsyncSession, clock: Clock = utc_now, cross_session: bool = True):
        self.session = session
        self.clock = clock
        self.cross_session = cross_session

    async def try_create(
        self,
        tenant_id: UUID,
        record_id: str,
        holder: Holder,
        duration_seconds: int,
        record_type: str | None = None,
    ) -> CreateResult:
        """Create a lease if no live lease exists for the record."""
        now = self.clock()
        purged = await self._purge_if_expired(tenant_id, record_id, now)

        expires_at = now + timedelta(seconds=duration_seconds)
        values = {
            "tenant_id": tenant_id,
            "record_id": record_id,
            "record_type": record_type,
            "holder_id": holder.holder_id,
            "holder_display_name": holder.display_name or holder.holder_id,
            "session_id": holder.session_id,
            "acquired_at": now,
            "expires_at": expires_at,
            "last_activity_at": now,
            "renewal_count": 0,
        }
        stmt = (
            self._insert()
            .values(**values)
            .on_conflict_do_nothing(index_elements=["tenant_id", "record_id"])
        )
        result = await self.session.execute(stmt)

        if result.rowcount == 1:
            return CreateResult(lease=Lease(**values), purged=purged)

        existing = await self.get(tenant_id, record_id)
        return CreateResult(conflict=existing, purged=purged)

    async def get(self, tenant_id: UUID, record_id: str) -> Lease | None:
        """Get the live lease for a record. Expired rows read as absent."""
        row = await self._get_row(tenant_id, record_id)
        if row is None:
            return None
        lease = self._row_to_model(row)
        if lease.is_expired(self.clock()):
            return None
        return lease

    async def renew(
        self,
        tenant_id: UUID,
        record_id: str,
        holder: Holder,
        duration_seconds: int,
        claim_session: bool = False,
    ) -> Lease | None:
        """
        Extend a live lease held by ``holder`` to now + duration.

        With ``claim_session`` the lease moves to ``holder.session_id``, so a
        re-acquire from another tab of the same holder owns it from then on.

        expires_at never moves backward: if the current expiry is already
        later than now + duration it is kept as is.

        Returns None when the caller does not hold a live lease (the caller
        must re-acquire).
        """
        # One retry covers a concurrent renew from a sibling session.
        for _ in range(2):
            now = self.clock()
            row = await self._get_row(tenant_id, record_id)
            if row is None:
                return None

            current = self._row_to_model(row)
            if current.is_expired(now) or not self.holds(holder, current):
                return None

            new_expires_at = max(current.expires_at, now + timedelta(seconds=duration_seconds))
            changes = {"expires_at": new_expires_at, "last_activity_at": now}
            if claim_session:
                changes["session_id"] = holder.session_id
            result = await self.session.execute(
                update(leases_table)
                .where(
                    leases_table.c.id == row.id,
                    leases_table.c.expires_at == row.expires_at,
                )
                .values(**changes, renewal_count=leases_table.c.renewal_count + 1)
            )
            if result.rowcount == 1:
                return current.model_copy(
                    update={**changes, "renewal_count": current.renewal_count + 1}
                )
        return None

    async def release(self, tenant_id: UUID, record_id: str, holder: Holder) -> bool:
        """
        Delete the caller's live lease. False (no-op) if absent or foreign.

        Always session scoped: a tab cannot drop a lease that another tab of
        the same holder has since re-acquired.
        """
        result = await self.session.execute(
            delete(leases_table).where(
                leases_table.c.tenant_id == tenant_id,
                leases_table.c.record_id == record_id,
                leases_table.c.holder_id == holder.holder_id,
                leases_table.c.expires_at > self.clock(),
                leases_table.c.session_id == holder.session_id,
            )
        )
        return result.rowcount > 0

    async def list_live(
        self,
        tenant_id: UUID,
        record_ids: list[str] | None = None,
        holder_id: str | None = None,
        session_id: str | None = None,
    ) -> list[Lease]:
        """List live leases, optionally filtered by records or holder."""
        query = select(leases_table).where(
            leases_table.c.tenant_id == tenant_id,
            leases_table.c.expires_at > self.clock(),
        )
        if record_ids is not None:
            query = query.where(leases_table.c.record_id.in_(record_ids))
        if holder_id is not None:
            query = query.where(leases_table.c.holder_id == holder_id)
        if session_id is not None:
            query = query.where(leases_table.c.session_id == session_id)
        query = query.order_by(leases_table.c.acquired_at.asc())

        result = await self.session.execute(query)
        return [self._row_to_model(row) for row in result.all()]

    async def purge_expired(self, limit: int = 100) -> list[Lease]:
        """
        Physically remove expired leases (storage hygiene for the sweeper).

        Each delete compares on expires_at, so a lease renewed after it was
        read here survives.
        """
        now = self.clock()
        result = await self.session.execute(
            select(leases_table)
            .where(leases_table.c.expires_at <= now)
            .order_by(leases_table.c.expires_at.asc())
            .limit(limit)
        )

        purged = []
        for row in result.all():
            if await self._delete_row_if_unchanged(row):
                purged.append(self._row_to_model(row))
        return purged

    async def _purge_if_expired(self, tenant_id: UUID, record_id: str, now: datetime) -> Lease | None:
        row = await self._get_row(tenant_id, record_id)
        if row is None or ensure_utc(row.expires_at) > now:
            return None
        if await self._delete_row_if_unchanged(row):
            return self._row_to_model(row)
        return None

    async def _delete_row_if_unchanged(self, row: Any) -> bool:
        result = await self.session.execute(
            delete(leases_table).where(
                leases_table.c.id == row.id,
                leases_table.c.expires_at == row.expires_at,
            )
        )
        return result.rowcount == 1

    async def _get_row(self, tenant_id: UUID, record_id: str) -> Any:
        result = await self.session.execute(
            select(leases_table).where(
                leases_table.c.tenant_id == tenant_id,
                leases_table.c.record_id == record_id,
            )
        )
        return result.first()

    def holds(self, holder: Holder, lease: Lease) -> bool:
        return holder.matches(lease.holder_id, lease.session_id, cross_session=self.cross_session)

    def _insert(self):
        if self.session.get_bind().dialect.name == "postgresql":
            return pg_insert(LeaseTable)
        return sqlite_insert(LeaseTable)

    def _row_to_model(self, row: Any) -> Lease:
        """Convert database row to model."""
        return Lease(
            tenant_id=row.tenant_id,
            record_id=row.record_id,
            record_type=row.record_type,
            holder_id=row.holder_id,
            holder_display_name=row.holder_display_name,
            session_id=row.session_id,
            acquired_at=ensure_utc(row.acquired_at),
            expires_at=ensure_utc(row.expires_at),
            last_activity_at=ensure_utc(row.last_activity_at),
            renewal_count=row.renewal_count,
        )
