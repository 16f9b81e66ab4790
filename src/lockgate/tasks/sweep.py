"""Background loops: expired lease sweep and dashboard metrics push."""

import asyncio
import logging
import random
from typing import Optional

from lockgate.observability.metrics import metrics
from lockgate.observability.trace import set_trace_id
from lockgate.services import LockServices

logger = logging.getLogger("lockgate.sweep")


class PeriodicTask:
    """
    Jittered background loop with cooperative shutdown.

    Jitter (±20%) keeps several instances from running in lockstep. A failing
    iteration is logged and the loop carries on.
    """

    name = "periodic"

    def __init__(self, interval_seconds: float, jitter: float = 0.2):
        self.interval_seconds = interval_seconds
        self.jitter = jitter
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        raise NotImplementedError

    async def _loop(self) -> None:
        logger.info(
            f"{self.name} loop started (base interval: {self.interval_seconds}s "
            f"with ±{int(self.jitter * 100)}% jitter)"
        )
        while not self._shutdown_event.is_set():
            try:
                set_trace_id()
                await self.run_once()
            except Exception as e:
                logger.error(f"{self.name} error: {e}", exc_info=True)

            jittered_interval = self.interval_seconds * random.uniform(1 - self.jitter, 1 + self.jitter)
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=jittered_interval)
            except asyncio.TimeoutError:
                pass

        logger.info(f"{self.name} loop stopped")

    async def start(self) -> None:
        if self.running:
            return
        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())

    async def stop(self, timeout: float = 10.0) -> None:
        if self._shutdown_event:
            self._shutdown_event.set()

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{self.name} task did not stop gracefully, cancelling")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass

        self._task = None
        self._shutdown_event = None


class LeaseSweeper(PeriodicTask):
    """
    Purges expired leases and announces them as ``lock_released``.

    Readers never depend on this loop: expiry is checked at read time. The
    sweep only reclaims rows and tells viewers sooner than their next poll.
    """

    name = "Lease sweep"

    def __init__(self, services: LockServices, batch_size: int = 100):
        super().__init__(services.settings.lease_sweep_interval_seconds)
        self.services = services
        self.batch_size = batch_size

    async def run_once(self) -> int:
        async with self.services.lock_manager_scope() as manager:
            expired = await manager.expire_leases(batch_size=self.batch_size)
        if expired:
            logger.info(f"Expired {expired} leases")
        return expired


class MetricsPusher(PeriodicTask):
    """Pushes lock/connection metrics to every joined dashboard."""

    name = "Metrics push"

    def __init__(self, services: LockServices):
        super().__init__(services.settings.metrics_push_interval_seconds)
        self.services = services

    async def run_once(self) -> int:
        hub = self.services.hub
        pushed = 0
        for tenant_id, user_id in hub.dashboard_users():
            async with self.services.lock_manager_scope() as manager:
                locks = await manager.list_locks(tenant_id)
            payload = {
                "active_locks": len(locks),
                "my_locks": sum(1 for lock in locks if lock.holder_id == user_id),
                "connected_clients": len(hub.connections(tenant_id)),
                "locks_acquired_total": metrics.counter("locks.acquired"),
                "lock_conflicts_total": metrics.counter("locks.conflicts"),
            }
            if await hub.broadcast_metrics(tenant_id, user_id, payload):
                pushed += 1
        return pushed
