"""Database connection and session management."""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from lockgate.observability.metrics import metrics


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


def _attach_query_metrics(target_engine: AsyncEngine) -> None:
    """Attach SQLAlchemy event listeners for query metrics."""
    sync_engine = target_engine.sync_engine
    if getattr(sync_engine, "_lockgate_metrics_attached", False):
        return

    @event.listens_for(sync_engine, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info["query_start_time"] = time.perf_counter()

    @event.listens_for(sync_engine, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start_time = conn.info.pop("query_start_time", None)
        if start_time is None:
            return
        duration_ms = (time.perf_counter() - start_time) * 1000.0
        metrics.inc_counter("db.query.count")
        metrics.observe("db.query.duration_ms", duration_ms)

    sync_engine._lockgate_metrics_attached = True


class Database:
    """Owns the async engine and session factory for one application instance."""

    def __init__(self, database_url: str, echo: bool = False):
        self.url = database_url
        engine_kwargs: dict[str, Any] = {"echo": echo}
        if database_url.startswith("sqlite"):
            # Writers queue on SQLite's file lock instead of failing fast.
            engine_kwargs["connect_args"] = {"timeout": 30}
        else:
            engine_kwargs.update(pool_pre_ping=True, pool_size=20, max_overflow=10)

        self.engine: AsyncEngine = create_async_engine(database_url, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        _attach_query_metrics(self.engine)

    async def init(self) -> None:
        """Initialize database tables."""
        import lockgate.db.tables  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close database connections."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
