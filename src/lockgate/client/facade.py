"""Client lock facade - the single entry point UI code talks to."""

import asyncio
import logging
import secrets
import time
from typing import Callable, Iterable, Optional

from lockgate.client.api import LockApiClient
from lockgate.client.channel import RealtimeChannel
from lockgate.client.errors import LockClientError
from lockgate.client.heartbeat import HeartbeatCoordinator
from lockgate.models import AcquireResult, ConnectionState, LockInfo

logger = logging.getLogger("lockgate.client")

ChangeCallback = Callable[[str, Optional[LockInfo]], None]

# Batch size accepted by /v1/locks/query.
_QUERY_BATCH = 200


def new_session_id() -> str:
    """Per-tab session id: ``session_<epoch ms>_<random>``."""
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class LockClient:
    """
    Lock state for one client session.

    Wires the REST client, the heartbeat coordinator and (optionally) the
    realtime channel together. The local cache only drives display: every
    acquire goes to the server.
    """

    def __init__(
        self,
        api: LockApiClient,
        heartbeat: HeartbeatCoordinator,
        display_name: str,
        channel: Optional[RealtimeChannel] = None,
        reconcile_interval: float = 60.0,
    ):
        self.api = api
        self.heartbeat = heartbeat
        self.display_name = display_name
        self.channel = channel
        self.reconcile_interval = reconcile_interval
        self.last_error: str | None = None
        self._cache: dict[str, Optional[LockInfo]] = {}
        self._watched: set[str] = set()
        self._listeners: list[ChangeCallback] = []
        self._connection_lost = False
        self._reconcile_task: Optional[asyncio.Task] = None
        self._unsubscribers: list[Callable[[], None]] = []

        if heartbeat.on_lost is None:
            heartbeat.on_lost = self._handle_lost

        if channel is not None:
            self._unsubscribers.extend(
                [
                    channel.on("lock_acquired", self._handle_acquired_event),
                    channel.on("lock_released", self._handle_released_event),
                    channel.on_state(self._handle_state),
                ]
            )

    @property
    def holder_id(self) -> str:
        return self.heartbeat.holder_id

    @property
    def session_id(self) -> str:
        return self.heartbeat.session_id

    @property
    def held(self) -> set[str]:
        return self.heartbeat.held

    @property
    def connection_lost(self) -> bool:
        """True while the realtime channel is down. Editing is not blocked."""
        return self._connection_lost

    # ------------------------------------------------------------------
    # Lock operations
    # ------------------------------------------------------------------

    async def acquire_lock(self, record_id: str, record_type: str | None = None) -> bool:
        """
        Ask the server for the lease on ``record_id``.

        On refusal ``last_error`` names the current holder and the cache
        shows their lock. An unreachable server also refuses (fail closed).
        """
        self._watched.add(record_id)
        try:
            result = await self.api.acquire(
                record_id,
                self.holder_id,
                self.session_id,
                self.display_name,
                record_type=record_type,
            )
        except LockClientError as e:
            logger.warning(f"Acquire of {record_id} failed: {e.message}")
            self.last_error = e.message
            return False

        if result.granted and result.lease is not None:
            self.last_error = None
            self.heartbeat.track(record_id)
            self._set_cached(record_id, result.lease.to_info())
            return True

        info = self._conflicting_lock(record_id, result)
        self.last_error = info.describe() if info else "Record is locked by another user"
        if info is not None:
            self._set_cached(record_id, info)
        return False

    async def release_lock(self, record_id: str) -> None:
        """Release ``record_id``. Always safe; never raises."""
        await self.heartbeat.stop(record_id)
        if self.is_locked_by_me(record_id):
            self._set_cached(record_id, None)

    def get_lock(self, record_id: str) -> LockInfo | None:
        """Cached lock state; refreshed by events and reconciliation."""
        return self._cache.get(record_id)

    def is_locked_by_me(self, record_id: str) -> bool:
        info = self._cache.get(record_id)
        return info is not None and info.holder_id == self.holder_id

    def watch(self, record_ids: Iterable[str]) -> None:
        """Include records in reconciliation (records on screen)."""
        self._watched.update(record_ids)

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register ``callback(record_id, lock_or_none)``; returns unsubscribe."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def reconcile(self) -> None:
        """Re-query every watched or held record in batched calls."""
        record_ids = sorted(self._watched | self.heartbeat.held | set(self._cache))
        if not record_ids:
            return

        for start in range(0, len(record_ids), _QUERY_BATCH):
            batch = record_ids[start : start + _QUERY_BATCH]
            try:
                locks = await self.api.query(batch)
            except LockClientError as e:
                logger.info(f"Reconciliation skipped: {e.message}")
                return

            for record_id in batch:
                info = locks.get(record_id)
                self._set_cached(record_id, info)
                if record_id in self.heartbeat.held and (info is None or info.holder_id != self.holder_id):
                    self.heartbeat.untrack(record_id)
                    logger.info(f"Reconciliation found lease on {record_id} lost")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.heartbeat.start()
        if self.channel is not None:
            await self.channel.open()
        if self.reconcile_interval > 0 and self._reconcile_task is None:
            self._reconcile_task = asyncio.create_task(self._reconcile_loop())

    async def close(self) -> None:
        """Stop background work and release every held lease best effort."""
        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            try:
                await self._reconcile_task
            except asyncio.CancelledError:
                pass
            self._reconcile_task = None

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        if self.channel is not None:
            await self.channel.close()

        held = self.heartbeat.held
        await self.heartbeat.shutdown(release=True)
        for record_id in held:
            if self.is_locked_by_me(record_id):
                self._set_cached(record_id, None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _conflicting_lock(self, record_id: str, result: AcquireResult) -> LockInfo | None:
        if result.held_by is None or result.acquired_at is None or result.expires_at is None:
            return None
        return LockInfo(
            record_id=record_id,
            holder_id=result.held_by_id or "",
            holder_display_name=result.held_by,
            session_id="",
            acquired_at=result.acquired_at,
            expires_at=result.expires_at,
        )

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reconcile_interval)
            try:
                await self.reconcile()
            except Exception as e:
                logger.error(f"Reconciliation error: {e}", exc_info=True)

    def _handle_acquired_event(self, data: dict) -> None:
        try:
            info = LockInfo.model_validate(data)
        except ValueError as e:
            logger.warning(f"Ignoring malformed lock_acquired event: {e}")
            return
        self._set_cached(info.record_id, info)

    def _handle_released_event(self, data: dict) -> None:
        record_id = data.get("record_id")
        if not record_id:
            return
        cached = self._cache.get(record_id)
        if cached is not None and not _same_lease(cached, data):
            # Release of an older lease, delivered after the current grant
            return
        if record_id in self.heartbeat.held:
            if data.get("session_id") != self.session_id:
                return
            self.heartbeat.untrack(record_id)
            logger.info(f"Lease on {record_id} released elsewhere ({data.get('reason')})")
        self._set_cached(record_id, None)

    async def _handle_state(self, state: ConnectionState) -> None:
        if state == ConnectionState.CONNECTED:
            was_lost = self._connection_lost
            self._connection_lost = False
            if was_lost:
                await self.reconcile()
        elif state in (
            ConnectionState.RECONNECTING,
            ConnectionState.DISCONNECTED,
            ConnectionState.AUTH_FAILED,
        ):
            self._connection_lost = True

    def _handle_lost(self, record_id: str) -> None:
        self._set_cached(record_id, None)

    def _set_cached(self, record_id: str, info: Optional[LockInfo]) -> None:
        previous = self._cache.get(record_id)
        self._cache[record_id] = info
        if previous == info:
            return
        for callback in list(self._listeners):
            try:
                callback(record_id, info)
            except Exception as e:
                logger.warning(f"Lock change listener failed for {record_id}: {e}")


def _same_lease(info: LockInfo, data: dict) -> bool:
    """Whether a ``lock_released`` payload names the holder in ``info``."""
    holder_id = data.get("holder_id")
    if holder_id is not None and holder_id != info.holder_id:
        return False
    session_id = data.get("session_id")
    if session_id is not None and info.session_id and session_id != info.session_id:
        return False
    return True
