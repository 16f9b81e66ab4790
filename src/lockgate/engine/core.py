"""LockGate core engine - lock manager operations and per-record state machine."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from lockgate.config import settings
from lockgate.db.repositories import LeaseRepository
from lockgate.engine.errors import InvalidRequest, LockContention, StorageUnavailable
from lockgate.engine.publisher import EventPublisher, NullPublisher
from lockgate.models import (
    AcquireResult,
    HeartbeatResult,
    Holder,
    LockEvent,
    LockInfo,
    ReleaseReason,
)
from lockgate.observability.metrics import metrics
from lockgate.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)

# Attempts at the conditional insert before reporting contention.
_MAX_CREATE_ATTEMPTS = 3


class LockManager:
    """
    Lock manager implementing acquire / renew / release / query.

    Per record the only states are UNLOCKED and LOCKED(holder):
    - UNLOCKED -> LOCKED(holder): acquire wins the conditional insert
    - LOCKED(holder) -> LOCKED(holder): renew, or re-acquire by the holder
    - LOCKED(holder) -> UNLOCKED: release, or passive expiry

    Every operation commits its own unit of work; events are published only
    after the commit so they never describe state that was rolled back.
    """

    def __init__(
        self,
        session: AsyncSession,
        publisher: EventPublisher | None = None,
        *,
        lease_duration_seconds: int | None = None,
        cross_session: bool | None = None,
        clock: Clock = utc_now,
    ):
        self.session = session
        self.publisher = publisher or NullPublisher()
        self.lease_duration_seconds = lease_duration_seconds or settings.lease_duration_seconds
        if cross_session is None:
            cross_session = settings.allow_cross_session_reentry
        self.leases = LeaseRepository(session, clock=clock, cross_session=cross_session)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def acquire(
        self,
        tenant_id: UUID,
        record_id: str,
        holder: Holder,
        record_type: str | None = None,
    ) -> AcquireResult:
        """
        Try to take the lease on a record.

        An acquire by the current holder is an implicit renew. "Already
        locked" is returned as ``granted=False`` with the holder's identity.
        """
        self._validate(record_id, holder)
        events: list[LockEvent] = []
        result: AcquireResult | None = None

        async with self._unit_of_work("acquire"):
            for _ in range(_MAX_CREATE_ATTEMPTS):
                outcome = await self.leases.try_create(
                    tenant_id,
                    record_id,
                    holder,
                    self.lease_duration_seconds,
                    record_type=record_type,
                )
                if outcome.purged:
                    events.append(LockEvent.lease_released(outcome.purged, ReleaseReason.EXPIRED))
                    metrics.inc_counter("locks.expired")

                if outcome.created:
                    result = AcquireResult.grant(outcome.lease)
                    events.append(LockEvent.acquired(outcome.lease))
                    break

                if outcome.conflict is None:
                    # Competing lease disappeared between insert and read-back
                    continue

                if self.leases.holds(holder, outcome.conflict):
                    renewed = await self.leases.renew(
                        tenant_id,
                        record_id,
                        holder,
                        self.lease_duration_seconds,
                        claim_session=True,
                    )
                    if renewed:
                        result = AcquireResult.grant(renewed)
                        break
                    continue

                result = AcquireResult.conflict(outcome.conflict)
                break

        if result is None:
            raise LockContention(record_id)

        await self._publish(events)

        if result.granted:
            metrics.inc_counter("locks.acquired")
            logger.info(
                f"Lock on {record_id} granted to {holder.holder_id} "
                f"(session {holder.session_id}) until {result.expires_at.isoformat()}"
            )
        else:
            metrics.inc_counter("locks.conflicts")
            logger.debug(f"Lock on {record_id} refused for {holder.holder_id}: held by {result.held_by_id}")
        return result

    async def renew(self, tenant_id: UUID, record_id: str, holder: Holder) -> bool:
        """Extend the caller's lease. False means the caller must re-acquire."""
        self._validate(record_id, holder)
        async with self._unit_of_work("renew"):
            lease = await self.leases.renew(
                tenant_id, record_id, holder, self.lease_duration_seconds
            )

        if lease is None:
            metrics.inc_counter("locks.renew_rejected")
            logger.debug(f"Renew of {record_id} rejected for {holder.holder_id}")
            return False

        metrics.inc_counter("locks.renewed")
        return True

    async def release(
        self,
        tenant_id: UUID,
        record_id: str,
        holder: Holder,
        reason: ReleaseReason = ReleaseReason.RELEASED,
    ) -> bool:
        """Release the caller's lease. Idempotent; False when nothing was held."""
        self._validate(record_id, holder)
        async with self._unit_of_work("release"):
            released = await self.leases.release(tenant_id, record_id, holder)

        if released:
            metrics.inc_counter("locks.released")
            logger.info(f"Lock on {record_id} released by {holder.holder_id} ({reason.value})")
            await self._publish(
                [
                    LockEvent.released(
                        tenant_id,
                        record_id,
                        reason,
                        holder_id=holder.holder_id,
                        session_id=holder.session_id,
                    )
                ]
            )
        return released

    async def heartbeat(
        self,
        tenant_id: UUID,
        holder: Holder,
        record_ids: list[str],
    ) -> HeartbeatResult:
        """Renew every listed lease of one session in a single unit of work."""
        result = HeartbeatResult()
        if not record_ids:
            return result

        async with self._unit_of_work("heartbeat"):
            for record_id in dict.fromkeys(record_ids):
                lease = await self.leases.renew(
                    tenant_id, record_id, holder, self.lease_duration_seconds
                )
                if lease:
                    result.renewed.append(record_id)
                else:
                    result.lost.append(record_id)

        metrics.inc_counter("locks.renewed", len(result.renewed))
        if result.lost:
            metrics.inc_counter("locks.renew_rejected", len(result.lost))
            logger.info(
                f"Heartbeat from {holder.holder_id} lost {len(result.lost)} lease(s): {result.lost}"
            )
        return result

    async def release_session(self, tenant_id: UUID, holder: Holder) -> list[str]:
        """Release every live lease held by one session (disconnect cleanup)."""
        async with self._unit_of_work("release_session"):
            leases = await self.leases.list_live(
                tenant_id,
                holder_id=holder.holder_id,
                session_id=holder.session_id,
            )
            released = []
            for lease in leases:
                if await self.leases.release(tenant_id, lease.record_id, holder):
                    released.append(lease)

        if released:
            metrics.inc_counter("locks.released", len(released))
            logger.info(
                f"Released {len(released)} lease(s) of {holder.holder_id} "
                f"session {holder.session_id} on disconnect"
            )
            await self._publish(
                [
                    LockEvent.lease_released(lease, ReleaseReason.DISCONNECTED)
                    for lease in released
                ]
            )
        return [lease.record_id for lease in released]

    async def expire_leases(self, batch_size: int = 100) -> int:
        """
        Purge expired leases and announce them as released.

        Called by the background sweeper. Readers already treat these leases
        as absent; this only reclaims storage and pushes the event.
        """
        async with self._unit_of_work("expire_leases"):
            purged = await self.leases.purge_expired(limit=batch_size)

        if purged:
            metrics.inc_counter("locks.expired", len(purged))
            await self._publish(
                [
                    LockEvent.lease_released(lease, ReleaseReason.EXPIRED)
                    for lease in purged
                ]
            )
        return len(purged)

    # =========================================================================
    # Queries (side-effect free)
    # =========================================================================

    async def is_locked(self, tenant_id: UUID, record_id: str) -> LockInfo | None:
        """Current lock on a record, or None when unlocked or expired."""
        async with self._storage_errors("is_locked"):
            lease = await self.leases.get(tenant_id, record_id)
        return lease.to_info() if lease else None

    async def query(self, tenant_id: UUID, record_ids: list[str]) -> dict[str, LockInfo | None]:
        """Batch lock lookup used by clients to reconcile their caches."""
        if len(record_ids) > settings.max_query_records:
            raise InvalidRequest(
                f"At most {settings.max_query_records} records per query, got {len(record_ids)}"
            )
        async with self._storage_errors("query"):
            leases = await self.leases.list_live(tenant_id, record_ids=list(record_ids))

        found = {lease.record_id: lease.to_info() for lease in leases}
        return {record_id: found.get(record_id) for record_id in record_ids}

    async def list_locks(self, tenant_id: UUID, holder_id: str | None = None) -> list[LockInfo]:
        """All live locks of a tenant, optionally for one holder."""
        async with self._storage_errors("list_locks"):
            leases = await self.leases.list_live(tenant_id, holder_id=holder_id)
        return [lease.to_info() for lease in leases]

    # =========================================================================
    # Internals
    # =========================================================================

    def _validate(self, record_id: str, holder: Holder) -> None:
        if not record_id or len(record_id) > 255:
            raise InvalidRequest("record_id must be 1-255 characters")
        if not holder.holder_id or not holder.session_id:
            raise InvalidRequest("holder_id and session_id are required")

    @asynccontextmanager
    async def _storage_errors(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (DBAPIError, OSError) as e:
            logger.error(f"Lease store failure during {operation}: {e}")
            metrics.inc_counter("locks.storage_errors")
            raise StorageUnavailable(operation, str(e)) from e

    @asynccontextmanager
    async def _unit_of_work(self, operation: str) -> AsyncIterator[None]:
        """Commit on success; roll back and fail closed on storage errors."""
        try:
            async with self._storage_errors(operation):
                yield
                await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    async def _publish(self, events: list[LockEvent]) -> None:
        for event in events:
            try:
                await self.publisher.publish(event)
            except Exception as e:
                # Events are hints; the committed lease state stands.
                logger.warning(f"Failed to publish {event.event.value} for {event.record_id}: {e}")
                metrics.inc_counter("realtime.publish_failed")
