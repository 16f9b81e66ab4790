"""Realtime notification hub - fans lock events out to connected viewers."""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol
from uuid import UUID, uuid4

from lockgate.auth.context import ChannelIdentity
from lockgate.models import LockEvent
from lockgate.observability.metrics import metrics
from lockgate.utils.time import utc_now

logger = logging.getLogger("lockgate.realtime")

# Throttle entries older than this are pruned.
_THROTTLE_RETENTION_SECONDS = 300.0

ChangeListener = Callable[[LockEvent], Any]


class ClientSocket(Protocol):
    """The part of a WebSocket the hub needs."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass(eq=False)
class Connection:
    """One client session's realtime connection."""

    socket: ClientSocket
    identity: ChannelIdentity
    connection_id: str = field(default_factory=lambda: uuid4().hex)
    session_id: str | None = None
    # None means "every record of the tenant"
    watched: set[str] | None = None
    rooms: set[str] = field(default_factory=set)

    @property
    def tenant_id(self) -> UUID:
        return self.identity.tenant_id

    def wants(self, record_id: str) -> bool:
        return self.watched is None or record_id in self.watched


def dashboard_room(tenant_id: UUID, user_id: str) -> str:
    return f"dashboard:{tenant_id}:{user_id}"


class NotificationHub:
    """
    Publish/subscribe transport for lock events.

    Delivery is best effort: a socket that fails a send is dropped and its
    client is expected to reconnect and reconcile through the lock query
    API. In-process observers register with ``on_change``.
    """

    def __init__(self, metrics_throttle_seconds: float = 1.0, monotonic: Callable[[], float] = time.monotonic):
        self.metrics_throttle_seconds = metrics_throttle_seconds
        self._monotonic = monotonic
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._listeners: list[ChangeListener] = []
        self._throttle: dict[str, float] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connections(self, tenant_id: UUID | None = None) -> list[Connection]:
        return [
            conn
            for conn in self._connections.values()
            if tenant_id is None or conn.tenant_id == tenant_id
        ]

    async def connect(self, socket: ClientSocket, identity: ChannelIdentity) -> Connection:
        connection = Connection(socket=socket, identity=identity)
        async with self._lock:
            self._connections[connection.connection_id] = connection
        metrics.set_gauge("realtime.connections", len(self._connections))
        logger.info(
            f"Client {connection.connection_id} connected "
            f"(user: {identity.user_id}, tenant: {identity.tenant_id})"
        )
        return connection

    async def disconnect(self, connection: Connection) -> None:
        async with self._lock:
            if self._connections.pop(connection.connection_id, None) is None:
                return
            for room in connection.rooms:
                members = self._rooms.get(room)
                if members is not None:
                    members.discard(connection.connection_id)
                    if not members:
                        del self._rooms[room]
        metrics.set_gauge("realtime.connections", len(self._connections))
        logger.info(
            f"Client {connection.connection_id} disconnected (user: {connection.identity.user_id})"
        )

    def watch(self, connection: Connection, record_ids: list[str]) -> None:
        """Narrow (or extend) the records a connection hears about."""
        if connection.watched is None:
            connection.watched = set()
        connection.watched.update(record_ids)

    def unwatch(self, connection: Connection, record_ids: list[str]) -> None:
        if connection.watched is not None:
            connection.watched.difference_update(record_ids)

    async def join_room(self, connection: Connection, room: str) -> None:
        async with self._lock:
            self._rooms.setdefault(room, set()).add(connection.connection_id)
        connection.rooms.add(room)
        logger.info(f"Client {connection.connection_id} joined room: {room}")

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def dashboard_users(self) -> list[tuple[UUID, str]]:
        """(tenant, user) pairs with at least one dashboard connection."""
        users = set()
        for conn in self._connections.values():
            if dashboard_room(conn.tenant_id, conn.identity.user_id) in conn.rooms:
                users.add((conn.tenant_id, conn.identity.user_id))
        return sorted(users, key=lambda pair: (str(pair[0]), pair[1]))

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_change(self, callback: ChangeListener) -> Callable[[], None]:
        """Register an in-process listener; returns its unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def publish(self, event: LockEvent) -> None:
        """Deliver a lock event to listeners and interested connections."""
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(f"Lock event listener failed: {e}", exc_info=True)

        frame = event.to_frame()
        delivered = 0
        for conn in self.connections(event.tenant_id):
            if conn.wants(event.record_id) and await self._send_frame(conn, frame):
                delivered += 1

        metrics.inc_counter(f"realtime.events.{event.event.value}")
        logger.debug(f"Broadcast {event.event.value} for record {event.record_id} to {delivered} client(s)")

    async def send(self, connection: Connection, event: str, data: dict[str, Any]) -> bool:
        return await self._send_frame(connection, {"event": event, "data": data})

    async def send_to_user(self, tenant_id: UUID, user_id: str, event: str, data: dict[str, Any]) -> int:
        room = dashboard_room(tenant_id, user_id)
        members = [self._connections[cid] for cid in self._rooms.get(room, ()) if cid in self._connections]
        sent = 0
        for conn in members:
            if await self.send(conn, event, data):
                sent += 1
        return sent

    async def broadcast(self, tenant_id: UUID, event: str, data: dict[str, Any]) -> int:
        sent = 0
        for conn in self.connections(tenant_id):
            if await self.send(conn, event, data):
                sent += 1
        return sent

    async def broadcast_metrics(self, tenant_id: UUID, user_id: str, payload: dict[str, Any]) -> bool:
        """Push a metrics update to one user's dashboard, at most once per throttle window."""
        key = f"metrics:{tenant_id}:{user_id}"
        if self._is_throttled(key):
            logger.debug(f"Metrics broadcast throttled for user {user_id}")
            return False
        self._update_throttle(key)

        await self.send_to_user(
            tenant_id,
            user_id,
            "metrics:update",
            {"timestamp": utc_now().isoformat(), "metrics": payload},
        )
        return True

    async def close_all(self, code: int = 1001) -> None:
        for conn in list(self._connections.values()):
            try:
                await conn.socket.close(code=code)
            except Exception:
                logger.debug(f"Socket {conn.connection_id} already closed")
            await self.disconnect(conn)

    async def _send_frame(self, connection: Connection, frame: dict[str, Any]) -> bool:
        try:
            await connection.socket.send_json(frame)
            return True
        except Exception as e:
            logger.info(f"Dropping client {connection.connection_id} after failed send: {e}")
            metrics.inc_counter("realtime.send_failed")
            await self.disconnect(connection)
            return False

    def _is_throttled(self, key: str) -> bool:
        last_emit = self._throttle.get(key)
        if last_emit is None:
            return False
        return self._monotonic() - last_emit < self.metrics_throttle_seconds

    def _update_throttle(self, key: str) -> None:
        now = self._monotonic()
        self._throttle[key] = now
        cutoff = now - _THROTTLE_RETENTION_SECONDS
        for stale in [k for k, ts in self._throttle.items() if ts < cutoff]:
            del self._throttle[stale]
