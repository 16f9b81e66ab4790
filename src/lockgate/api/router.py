"""REST API router."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from lockgate import __version__
from lockgate.api.deps import get_lock_manager, get_tenant_id, verify_api_key
from lockgate.api.schemas import (
    AcquireLockRequest,
    AcquireLockResponse,
    HealthResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    ListLocksResponse,
    MetricsResponse,
    QueryLocksRequest,
    QueryLocksResponse,
    ReleaseLockRequest,
    ReleaseLockResponse,
    RenewLockRequest,
    RenewLockResponse,
)
from lockgate.engine import (
    InvalidRequest,
    LockContention,
    LockGateError,
    LockManager,
    StorageUnavailable,
    UnauthorizedError,
)
from lockgate.models import Holder, LockInfo
from lockgate.observability.metrics import metrics
from lockgate.observability.trace import get_trace_id

logger = logging.getLogger("lockgate.api")

router = APIRouter(prefix="/v1", dependencies=[Depends(verify_api_key)])


def _to_http(error: LockGateError) -> HTTPException:
    if isinstance(error, StorageUnavailable):
        logger.error(f"[trace {get_trace_id()}] {error.message}")
        return HTTPException(status_code=503, detail=error.message)
    if isinstance(error, LockContention):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, InvalidRequest):
        return HTTPException(status_code=400, detail=error.message)
    if isinstance(error, UnauthorizedError):
        return HTTPException(status_code=401, detail=error.message)
    return HTTPException(status_code=500, detail=error.message)


# ============================================================================
# Health & Metrics
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=__version__)


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics():
    """In-process counters, gauges and timings."""
    return MetricsResponse(**metrics.snapshot())


# ============================================================================
# Locks
# ============================================================================


@router.post("/locks/acquire", response_model=AcquireLockResponse)
async def acquire_lock(
    request: AcquireLockRequest,
    manager: LockManager = Depends(get_lock_manager),
    tenant_id: UUID = Depends(get_tenant_id),
):
    """
    Acquire the lease on a record.

    Always 200: a record locked by someone else comes back as
    ``granted: false`` with the holder's name so the UI can say who.
    """
    try:
        result = await manager.acquire(
            tenant_id=tenant_id,
            record_id=request.record_id,
            holder=request.holder(request.display_name),
            record_type=request.record_type,
        )
    except LockGateError as e:
        raise _to_http(e)

    return AcquireLockResponse(**result.model_dump())


@router.post("/locks/renew", response_model=RenewLockResponse)
async def renew_lock(
    request: RenewLockRequest,
    manager: LockManager = Depends(get_lock_manager),
    tenant_id: UUID = Depends(get_tenant_id),
):
    """Extend the caller's lease. ``renewed: false`` means re-acquire."""
    try:
        renewed = await manager.renew(tenant_id, request.record_id, request.holder())
        info = await manager.is_locked(tenant_id, request.record_id) if renewed else None
    except LockGateError as e:
        raise _to_http(e)

    return RenewLockResponse(renewed=renewed, expires_at=info.expires_at if info else None)


@router.post("/locks/release", response_model=ReleaseLockResponse)
async def release_lock(
    request: ReleaseLockRequest,
    manager: LockManager = Depends(get_lock_manager),
    tenant_id: UUID = Depends(get_tenant_id),
):
    """Release the caller's lease. Safe to call when nothing is held."""
    try:
        released = await manager.release(tenant_id, request.record_id, request.holder())
    except LockGateError as e:
        raise _to_http(e)

    return ReleaseLockResponse(released=released)


@router.post("/locks/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    request: HeartbeatRequest,
    manager: LockManager = Depends(get_lock_manager),
    tenant_id: UUID = Depends(get_tenant_id),
):
    """Renew every lease of one session in a single call."""
    holder = Holder(holder_id=request.holder_id, session_id=request.session_id)
    try:
        result = await manager.heartbeat(tenant_id, holder, request.record_ids)
    except LockGateError as e:
        raise _to_http(e)

    return HeartbeatResponse(renewed=result.renewed, lost=result.lost)


@router.post("/locks/query", response_model=QueryLocksResponse)
async def query_locks(
    request: QueryLocksRequest,
    manager: LockManager = Depends(get_lock_manager),
    tenant_id: UUID = Depends(get_tenant_id),
):
    """Batch lock lookup used for client cache reconciliation."""
    try:
        locks = await manager.query(tenant_id, request.record_ids)
    except LockGateError as e:
        raise _to_http(e)

    return QueryLocksResponse(locks=locks)


@router.get("/locks", response_model=ListLocksResponse)
async def list_locks(
    holder_id: Optional[str] = Query(None),
    manager: LockManager = Depends(get_lock_manager),
    tenant_id: UUID = Depends(get_tenant_id),
):
    """List live locks of the tenant, optionally for one holder."""
    try:
        locks = await manager.list_locks(tenant_id, holder_id=holder_id)
    except LockGateError as e:
        raise _to_http(e)

    return ListLocksResponse(locks=locks)


@router.get("/locks/{record_id}", response_model=Optional[LockInfo])
async def get_lock(
    record_id: str,
    manager: LockManager = Depends(get_lock_manager),
    tenant_id: UUID = Depends(get_tenant_id),
):
    """Current lock on a record, or null."""
    try:
        return await manager.is_locked(tenant_id, record_id)
    except LockGateError as e:
        raise _to_http(e)
