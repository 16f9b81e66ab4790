"""Explicitly constructed service graph shared by the API, gateway and background tasks."""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from lockgate.config import Settings
from lockgate.db.base import Database
from lockgate.engine import LockManager
from lockgate.realtime.hub import NotificationHub
from lockgate.utils.time import Clock, utc_now


@dataclass
class LockServices:
    """Everything a request needs to build a lock manager."""

    settings: Settings
    database: Database
    hub: NotificationHub
    clock: Clock = utc_now

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utc_now) -> "LockServices":
        return cls(
            settings=settings,
            database=Database(settings.database_url, echo=settings.debug),
            hub=NotificationHub(metrics_throttle_seconds=settings.metrics_throttle_seconds),
            clock=clock,
        )

    def lock_manager(self, session: AsyncSession) -> LockManager:
        return LockManager(
            session,
            self.hub,
            lease_duration_seconds=self.settings.lease_duration_seconds,
            cross_session=self.settings.allow_cross_session_reentry,
            clock=self.clock,
        )

    @asynccontextmanager
    async def lock_manager_scope(self) -> AsyncGenerator[LockManager, None]:
        """Lock manager bound to a fresh session (sockets and background loops)."""
        async with self.database.session() as session:
            yield self.lock_manager(session)
