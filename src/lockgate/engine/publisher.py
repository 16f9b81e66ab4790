"""Event publisher interface between the lock manager and the realtime hub."""

from typing import Protocol

from lockgate.models import LockEvent


class EventPublisher(Protocol):
    """Anything that can fan lock events out to viewers."""

    async def publish(self, event: LockEvent) -> None: ...


class NullPublisher:
    """Publisher used when no realtime channel is wired in."""

    async def publish(self, event: LockEvent) -> None:
        return None
