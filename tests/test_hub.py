"""
Notification hub tests: fan-out, observers, throttled metrics, dead sockets.
"""

from uuid import uuid4

import pytest

from lockgate.auth import ChannelIdentity
from lockgate.models import LockEvent, ReleaseReason
from lockgate.realtime.hub import NotificationHub, dashboard_room


class RecordingSocket:
    def __init__(self, fail=False):
        self.frames = []
        self.fail = fail
        self.closed_with = None

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket is gone")
        self.frames.append(data)

    async def close(self, code=1000):
        self.closed_with = code


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


def _identity(tenant_id, user_id):
    return ChannelIdentity(tenant_id=tenant_id, user_id=user_id, display_name=user_id.title())


@pytest.mark.asyncio
async def test_publish_fans_out_within_tenant():
    hub = NotificationHub()
    tenant_a, tenant_b = uuid4(), uuid4()
    alice, bob, carol = RecordingSocket(), RecordingSocket(), RecordingSocket()
    await hub.connect(alice, _identity(tenant_a, "alice"))
    await hub.connect(bob, _identity(tenant_a, "bob"))
    await hub.connect(carol, _identity(tenant_b, "carol"))

    await hub.publish(LockEvent.released(tenant_a, "order-1", ReleaseReason.EXPIRED))

    expected = {
        "event": "lock_released",
        "data": {"record_id": "order-1", "reason": "expired", "holder_id": None, "session_id": None},
    }
    assert alice.frames == [expected]
    assert bob.frames == [expected]
    assert carol.frames == []


@pytest.mark.asyncio
async def test_failed_send_drops_connection():
    hub = NotificationHub()
    tenant_id = uuid4()
    healthy = RecordingSocket()
    await hub.connect(RecordingSocket(fail=True), _identity(tenant_id, "ghost"))
    await hub.connect(healthy, _identity(tenant_id, "bob"))

    await hub.publish(LockEvent.released(tenant_id, "order-1"))

    assert hub.connection_count == 1
    assert len(healthy.frames) == 1


@pytest.mark.asyncio
async def test_on_change_listeners_and_unsubscribe():
    hub = NotificationHub()
    seen = []

    async def async_listener(event):
        seen.append(("async", event.record_id))

    def broken_listener(event):
        raise ValueError("listener bug")

    unsubscribe = hub.on_change(lambda event: seen.append(("sync", event.record_id)))
    hub.on_change(async_listener)
    hub.on_change(broken_listener)

    await hub.publish(LockEvent.released(uuid4(), "order-1"))
    unsubscribe()
    await hub.publish(LockEvent.released(uuid4(), "order-2"))

    assert seen == [("sync", "order-1"), ("async", "order-1"), ("async", "order-2")]


@pytest.mark.asyncio
async def test_metrics_broadcast_throttled_per_user():
    monotonic = FakeMonotonic()
    hub = NotificationHub(metrics_throttle_seconds=1.0, monotonic=monotonic)
    tenant_id = uuid4()
    socket = RecordingSocket()
    connection = await hub.connect(socket, _identity(tenant_id, "alice"))
    await hub.join_room(connection, dashboard_room(tenant_id, "alice"))

    assert await hub.broadcast_metrics(tenant_id, "alice", {"active_locks": 1}) is True
    monotonic.value += 0.5
    assert await hub.broadcast_metrics(tenant_id, "alice", {"active_locks": 2}) is False
    assert await hub.broadcast_metrics(tenant_id, "bob", {"active_locks": 2}) is True
    monotonic.value += 0.6
    assert await hub.broadcast_metrics(tenant_id, "alice", {"active_locks": 3}) is True

    pushed = [f["data"]["metrics"]["active_locks"] for f in socket.frames if f["event"] == "metrics:update"]
    assert pushed == [1, 3]


@pytest.mark.asyncio
async def test_stale_throttle_entries_pruned():
    monotonic = FakeMonotonic()
    hub = NotificationHub(monotonic=monotonic)
    tenant_id = uuid4()

    await hub.broadcast_metrics(tenant_id, "alice", {})
    monotonic.value += 301
    await hub.broadcast_metrics(tenant_id, "bob", {})

    assert list(hub._throttle) == [f"metrics:{tenant_id}:bob"]


@pytest.mark.asyncio
async def test_send_to_user_targets_dashboard_room():
    hub = NotificationHub()
    tenant_id = uuid4()
    dashboard, other_tab = RecordingSocket(), RecordingSocket()
    conn = await hub.connect(dashboard, _identity(tenant_id, "alice"))
    await hub.connect(other_tab, _identity(tenant_id, "alice"))
    await hub.join_room(conn, dashboard_room(tenant_id, "alice"))

    assert await hub.send_to_user(tenant_id, "alice", "notice", {"x": 1}) == 1
    assert await hub.broadcast(tenant_id, "notice", {"x": 2}) == 2
    assert len(dashboard.frames) == 2
    assert len(other_tab.frames) == 1
    assert hub.room_size(dashboard_room(tenant_id, "alice")) == 1


@pytest.mark.asyncio
async def test_watch_narrows_and_unwatch():
    hub = NotificationHub()
    tenant_id = uuid4()
    socket = RecordingSocket()
    conn = await hub.connect(socket, _identity(tenant_id, "bob"))

    hub.watch(conn, ["order-1"])
    await hub.publish(LockEvent.released(tenant_id, "order-1"))
    await hub.publish(LockEvent.released(tenant_id, "order-2"))
    hub.unwatch(conn, ["order-1"])
    await hub.publish(LockEvent.released(tenant_id, "order-1"))

    assert [f["data"]["record_id"] for f in socket.frames] == ["order-1"]


@pytest.mark.asyncio
async def test_disconnect_is_idempotent_and_close_all():
    hub = NotificationHub()
    tenant_id = uuid4()
    first, second = RecordingSocket(), RecordingSocket()
    conn = await hub.connect(first, _identity(tenant_id, "alice"))
    await hub.connect(second, _identity(tenant_id, "bob"))

    await hub.disconnect(conn)
    await hub.disconnect(conn)
    assert hub.connection_count == 1

    await hub.close_all()
    assert hub.connection_count == 0
    assert second.closed_with == 1001
    assert first.closed_with is None
