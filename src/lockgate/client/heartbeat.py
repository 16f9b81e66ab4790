"""Client-side heartbeat loop keeping the session's leases alive."""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from lockgate.client.api import LockApiClient
from lockgate.client.errors import LockClientError

logger = logging.getLogger("lockgate.client.heartbeat")

LostCallback = Callable[[str], Any]


class HeartbeatCoordinator:
    """
    Renews every tracked lease in one batched call per interval.

    A failed tick is logged and retried on the next interval; nothing is
    released locally until the server reports the lease lost. The interval
    must leave room for at least one missed beat before expiry.
    """

    def __init__(
        self,
        api: LockApiClient,
        holder_id: str,
        session_id: str,
        interval: float = 30.0,
        lease_duration: float = 300.0,
        on_lost: Optional[LostCallback] = None,
    ):
        if interval <= 0:
            raise ValueError("Heartbeat interval must be positive")
        if interval > lease_duration / 2:
            raise ValueError(
                f"Heartbeat interval ({interval}s) must be at most half the "
                f"lease duration ({lease_duration}s)"
            )
        self.api = api
        self.holder_id = holder_id
        self.session_id = session_id
        self.interval = interval
        self.lease_duration = lease_duration
        self.on_lost = on_lost
        self._tracked: set[str] = set()
        self._task: Optional[asyncio.Task] = None

    @property
    def held(self) -> set[str]:
        return set(self._tracked)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def track(self, record_id: str) -> None:
        self._tracked.add(record_id)

    def untrack(self, record_id: str) -> None:
        self._tracked.discard(record_id)

    async def beat(self) -> list[str]:
        """Run one heartbeat. Returns the records the server reported lost."""
        if not self._tracked:
            return []

        record_ids = sorted(self._tracked)
        try:
            result = await self.api.heartbeat(self.holder_id, self.session_id, record_ids)
        except LockClientError as e:
            logger.warning(f"Heartbeat for {len(record_ids)} lease(s) failed: {e.message}")
            return []

        for record_id in result.lost:
            if record_id not in self._tracked:
                continue
            self._tracked.discard(record_id)
            logger.info(f"Lease on {record_id} lost")
            await self._notify_lost(record_id)
        return list(result.lost)

    async def stop(self, record_id: str) -> bool:
        """Stop renewing a record and release it. Never raises."""
        self._tracked.discard(record_id)
        try:
            return await self.api.release(record_id, self.holder_id, self.session_id)
        except LockClientError as e:
            logger.warning(f"Release of {record_id} failed, lease will expire: {e.message}")
            return False

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def shutdown(self, release: bool = True) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if release:
            for record_id in sorted(self._tracked):
                await self.stop(record_id)
        self._tracked.clear()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.beat()
            except Exception as e:
                logger.error(f"Heartbeat loop error: {e}", exc_info=True)

    async def _notify_lost(self, record_id: str) -> None:
        if self.on_lost is None:
            return
        try:
            outcome = self.on_lost(record_id)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Lost-lease callback failed for {record_id}: {e}")
