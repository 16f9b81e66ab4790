"""
Lock manager tests: acquire/renew/release scenarios and lock events.
"""

from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from lockgate.engine import InvalidRequest, LockManager, StorageUnavailable
from lockgate.models import Holder, ReleaseReason

ALICE = Holder(holder_id="alice", session_id="session_a", display_name="Alice")
BOB = Holder(holder_id="bob", session_id="session_b", display_name="Bob")


@pytest.mark.asyncio
async def test_conflict_then_release_then_grant(manager):
    """A acquires, B is refused with A's name, A releases, B is granted."""
    tenant_id = uuid4()

    first = await manager.acquire(tenant_id, "order-1", ALICE)
    assert first.granted
    assert first.lease.holder_id == "alice"

    second = await manager.acquire(tenant_id, "order-1", BOB)
    assert not second.granted
    assert second.held_by == "Alice"
    assert second.held_by_id == "alice"
    assert second.expires_at == first.lease.expires_at

    assert await manager.release(tenant_id, "order-1", ALICE) is True

    third = await manager.acquire(tenant_id, "order-1", BOB)
    assert third.granted
    assert third.lease.holder_id == "bob"


@pytest.mark.asyncio
async def test_unrenewed_lease_expires_after_five_minutes(manager, clock):
    tenant_id = uuid4()
    await manager.acquire(tenant_id, "order-1", ALICE)

    clock.advance(minutes=4, seconds=59)
    assert (await manager.acquire(tenant_id, "order-1", BOB)).granted is False

    clock.advance(seconds=2)
    assert await manager.is_locked(tenant_id, "order-1") is None
    result = await manager.acquire(tenant_id, "order-1", BOB)
    assert result.granted


@pytest.mark.asyncio
async def test_heartbeats_keep_lease_alive(manager, clock):
    tenant_id = uuid4()
    await manager.acquire(tenant_id, "order-1", ALICE)

    for _ in range(20):  # ten minutes of heartbeats every 30 s
        clock.advance(seconds=30)
        result = await manager.heartbeat(tenant_id, ALICE, ["order-1"])
        assert result.renewed == ["order-1"]
        assert result.lost == []

    info = await manager.is_locked(tenant_id, "order-1")
    assert info is not None
    assert info.holder_id == "alice"
    assert (await manager.acquire(tenant_id, "order-1", BOB)).granted is False


@pytest.mark.asyncio
async def test_heartbeat_reports_lost_leases(manager, clock):
    tenant_id = uuid4()
    await manager.acquire(tenant_id, "order-1", ALICE)
    await manager.acquire(tenant_id, "order-2", BOB)

    result = await manager.heartbeat(tenant_id, ALICE, ["order-1", "order-2", "order-3"])

    assert result.renewed == ["order-1"]
    assert result.lost == ["order-2", "order-3"]


@pytest.mark.asyncio
async def test_same_holder_reacquire_is_renew(manager, clock, publisher):
    tenant_id = uuid4()
    first = await manager.acquire(tenant_id, "order-1", ALICE)

    clock.advance(seconds=60)
    again = await manager.acquire(tenant_id, "order-1", ALICE)

    assert again.granted
    assert again.lease.acquired_at == first.lease.acquired_at
    assert again.lease.expires_at > first.lease.expires_at
    assert again.lease.renewal_count == 1
    # Only the original acquisition is announced.
    assert publisher.names() == [("lock_acquired", "order-1")]


@pytest.mark.asyncio
async def test_other_session_of_same_holder(session, publisher, clock):
    tenant_id = uuid4()
    other_tab = Holder(holder_id="alice", session_id="session_other", display_name="Alice")

    reuse = LockManager(session, publisher, lease_duration_seconds=300, cross_session=True, clock=clock)
    await reuse.acquire(tenant_id, "order-1", ALICE)
    assert (await reuse.acquire(tenant_id, "order-1", other_tab)).granted

    strict = LockManager(session, publisher, lease_duration_seconds=300, cross_session=False, clock=clock)
    await strict.acquire(tenant_id, "order-2", ALICE)
    result = await strict.acquire(tenant_id, "order-2", other_tab)
    assert not result.granted
    assert result.held_by_id == "alice"


@pytest.mark.asyncio
async def test_reacquire_from_other_tab_survives_first_tab_cleanup(session, publisher, clock):
    tenant_id = uuid4()
    other_tab = Holder(holder_id="alice", session_id="session_other", display_name="Alice")
    manager = LockManager(session, publisher, lease_duration_seconds=300, cross_session=True, clock=clock)

    await manager.acquire(tenant_id, "order-1", ALICE)
    await manager.acquire(tenant_id, "order-2", ALICE)
    assert (await manager.acquire(tenant_id, "order-1", other_tab)).granted

    assert await manager.release(tenant_id, "order-1", ALICE) is False
    assert await manager.release_session(tenant_id, ALICE) == ["order-2"]

    info = await manager.is_locked(tenant_id, "order-1")
    assert info.session_id == "session_other"
    assert await manager.release(tenant_id, "order-1", other_tab) is True


@pytest.mark.asyncio
async def test_release_is_idempotent(manager, publisher):
    tenant_id = uuid4()
    await manager.acquire(tenant_id, "order-1", ALICE)

    assert await manager.release(tenant_id, "order-1", ALICE) is True
    assert await manager.release(tenant_id, "order-1", ALICE) is False
    assert await manager.release(tenant_id, "never-locked", ALICE) is False

    released = [e for e in publisher.events if e.event.value == "lock_released"]
    assert len(released) == 1
    assert released[0].data["reason"] == ReleaseReason.RELEASED.value


@pytest.mark.asyncio
async def test_release_by_non_holder_is_noop(manager):
    tenant_id = uuid4()
    await manager.acquire(tenant_id, "order-1", ALICE)

    assert await manager.release(tenant_id, "order-1", BOB) is False
    assert (await manager.is_locked(tenant_id, "order-1")).holder_id == "alice"


@pytest.mark.asyncio
async def test_renew_after_expiry_requires_reacquire(manager, clock):
    tenant_id = uuid4()
    await manager.acquire(tenant_id, "order-1", ALICE)

    assert await manager.renew(tenant_id, "order-1", ALICE) is True
    clock.advance(minutes=6)
    assert await manager.renew(tenant_id, "order-1", ALICE) is False
    assert (await manager.acquire(tenant_id, "order-1", ALICE)).granted


@pytest.mark.asyncio
async def test_acquire_over_expired_lease_announces_expiry(manager, clock, publisher):
    tenant_id = uuid4()
    await manager.acquire(tenant_id, "order-1", ALICE)
    clock.advance(minutes=5)

    await manager.acquire(tenant_id, "order-1", BOB)

    assert publisher.names() == [
        ("lock_acquired", "order-1"),
        ("lock_released", "order-1"),
        ("lock_acquired", "order-1"),
    ]
    assert publisher.events[1].data["reason"] == "expired"
    assert publisher.events[2].data["holder_id"] == "bob"


@pytest.mark.asyncio
async def test_expire_leases_purges_and_publishes(manager, clock, publisher):
    tenant_id = uuid4()
    await manager.acquire(tenant_id, "order-1", ALICE)
    await manager.acquire(tenant_id, "order-2", BOB)
    publisher.events.clear()

    clock.advance(minutes=5)
    assert await manager.expire_leases() == 2
    assert await manager.expire_leases() == 0
    assert sorted(publisher.names()) == [("lock_released", "order-1"), ("lock_released", "order-2")]


@pytest.mark.asyncio
async def test_release_session_releases_only_that_session(manager, publisher):
    tenant_id = uuid4()
    await manager.acquire(tenant_id, "order-1", ALICE)
    await manager.acquire(tenant_id, "order-2", ALICE)
    await manager.acquire(tenant_id, "order-3", BOB)
    publisher.events.clear()

    released = await manager.release_session(tenant_id, ALICE)

    assert sorted(released) == ["order-1", "order-2"]
    assert await manager.is_locked(tenant_id, "order-3") is not None
    assert {e.data["reason"] for e in publisher.events} == {"disconnected"}


@pytest.mark.asyncio
async def test_query_and_list_locks(manager):
    tenant_id = uuid4()
    await manager.acquire(tenant_id, "order-1", ALICE)
    await manager.acquire(tenant_id, "order-2", BOB)

    locks = await manager.query(tenant_id, ["order-1", "order-2", "order-3"])
    assert locks["order-1"].holder_display_name == "Alice"
    assert locks["order-2"].holder_id == "bob"
    assert locks["order-3"] is None

    mine = await manager.list_locks(tenant_id, holder_id="alice")
    assert [lock.record_id for lock in mine] == ["order-1"]


@pytest.mark.asyncio
async def test_query_rejects_oversized_batch(manager):
    with pytest.raises(InvalidRequest):
        await manager.query(uuid4(), [f"order-{i}" for i in range(201)])


@pytest.mark.asyncio
async def test_invalid_input_rejected(manager):
    tenant_id = uuid4()
    with pytest.raises(InvalidRequest):
        await manager.acquire(tenant_id, "", ALICE)
    with pytest.raises(InvalidRequest):
        await manager.acquire(tenant_id, "x" * 256, ALICE)
    with pytest.raises(InvalidRequest):
        await manager.acquire(tenant_id, "order-1", Holder(holder_id="", session_id="s"))


@pytest.mark.asyncio
async def test_publish_failure_does_not_undo_acquire(session, clock):
    class BrokenPublisher:
        async def publish(self, event):
            raise ConnectionError("hub down")

    manager = LockManager(session, BrokenPublisher(), lease_duration_seconds=300, clock=clock)
    tenant_id = uuid4()

    result = await manager.acquire(tenant_id, "order-1", ALICE)

    assert result.granted
    assert (await manager.is_locked(tenant_id, "order-1")).holder_id == "alice"


@pytest.mark.asyncio
async def test_storage_failure_fails_closed(manager, monkeypatch):
    async def broken_execute(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is unavailable"))

    monkeypatch.setattr(manager.session, "execute", broken_execute)

    with pytest.raises(StorageUnavailable):
        await manager.acquire(uuid4(), "order-1", ALICE)
    with pytest.raises(StorageUnavailable):
        await manager.is_locked(uuid4(), "order-1")
