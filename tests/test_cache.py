import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import NotificationType, PresenceStatus
from app.models.notification import Notification
from app.models.user import User
from app.services.cache import MemoryCache
from app.services.idempotency import (
    booking_idempotency_key,
    hash_payload,
    notification_idempotency_key,
    with_idempotency,
)
from app.services.notifications import notify_once
from app.services.presence import get_presence, set_presence


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# MemoryCache
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_memory_cache_expires_entries():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set("k", {"a": 1}, ttl=10)

    assert await cache.get("k") == {"a": 1}
    assert await cache.ttl("k") == 10

    clock.now += 9.5
    assert await cache.get("k") == {"a": 1}
    clock.now += 0.5
    assert await cache.get("k") is None
    assert await cache.ttl("k") is None


@pytest.mark.asyncio
async def test_memory_cache_delete_and_clear():
    cache = MemoryCache()
    await cache.set("a", 1, ttl=60)
    await cache.set("b", 2, ttl=60)
    await cache.delete("a")
    await cache.delete("missing")
    assert await cache.get("a") is None
    cache.clear()
    assert await cache.get("b") is None


@pytest.mark.asyncio
async def test_memory_cache_sweeps_expired_keys_on_write():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    for i in range(1000):
        await cache.set(f"presence:{i}", {"status": "online"}, ttl=0)
    assert len(cache._store) < 100

    await cache.set("idem:live", {"ok": True}, ttl=60)
    for i in range(1000):
        await cache.set(f"notify:{i}", True, ttl=0)
    assert len(cache._store) < 100
    assert await cache.get("idem:live") == {"ok": True}


@pytest.mark.asyncio
async def test_memory_cache_caps_live_entries():
    cache = MemoryCache(clock=FakeClock(), max_entries=100)
    for i in range(250):
        await cache.set(f"k{i}", i, ttl=3600)

    assert len(cache._store) == 100
    assert await cache.get("k0") is None
    assert await cache.get("k249") == 249


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------


def test_booking_key_shape():
    user_id, booking_id = uuid.uuid4(), uuid.uuid4()
    assert booking_idempotency_key("cancel", user_id, booking_id) == f"booking:cancel:{user_id}:{booking_id}"
    assert booking_idempotency_key("cancel", None) == "booking:cancel:none:none"


def test_booking_key_falls_back_to_payload_hash():
    user_id = uuid.uuid4()
    first = booking_idempotency_key("create", user_id, payload={"b": 2, "a": 1})
    second = booking_idempotency_key("create", user_id, payload={"a": 1, "b": 2})
    assert first == second
    assert first.endswith(hash_payload({"a": 1, "b": 2}))


def test_notification_key_shape():
    assert notification_idempotency_key("booking_paid", "b1", "u1") == "notify:booking_paid:b1:u1"


@pytest.mark.asyncio
async def test_with_idempotency_replays_stored_result():
    cache = MemoryCache()
    calls = []

    async def action():
        calls.append(1)
        return {"n": len(calls)}

    first = await with_idempotency(cache, "k1", 60, action)
    second = await with_idempotency(cache, "k1", 60, action)
    assert first == second == {"n": 1}
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_with_idempotency_does_not_store_failures():
    cache = MemoryCache()
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("boom")
        return {"ok": True}

    with pytest.raises(RuntimeError):
        await with_idempotency(cache, "k2", 60, flaky)
    assert await with_idempotency(cache, "k2", 60, flaky) == {"ok": True}
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_with_idempotency_runs_again_after_ttl():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    counter = {"n": 0}

    async def action():
        counter["n"] += 1
        return counter["n"]

    assert await with_idempotency(cache, "k3", 30, action) == 1
    clock.now += 31
    assert await with_idempotency(cache, "k3", 30, action) == 2


@pytest.mark.asyncio
async def test_with_idempotency_stores_only_committed_results():
    cache = MemoryCache()
    session = MagicMock()
    session.commit = AsyncMock(side_effect=OperationalError("COMMIT", {}, Exception("connection lost")))

    async def cancel():
        return {"status": "canceled_customer"}

    with pytest.raises(OperationalError):
        await with_idempotency(cache, "k4", 60, cancel, db=session)
    assert await cache.get("idem:k4") is None

    session.commit = AsyncMock()
    assert await with_idempotency(cache, "k4", 60, cancel, db=session) == {"status": "canceled_customer"}
    session.commit.assert_awaited_once()
    assert await cache.get("idem:k4") == {"status": "canceled_customer"}


# ---------------------------------------------------------------------------
# notify_once
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_notify_once_deduplicates(db: AsyncSession, customer_user: User):
    cache = MemoryCache()
    booking_id = uuid.uuid4()
    kwargs = dict(
        event="booking_paid",
        booking_id=booking_id,
        user_id=customer_user.id,
        notification_type=NotificationType.BOOKING_PAID,
        title="Booking paid",
        body="Paid.",
        data={"booking_id": str(booking_id)},
    )
    assert await notify_once(cache, db, **kwargs) is True
    assert await notify_once(cache, db, **kwargs) is False

    result = await db.execute(select(Notification).where(Notification.user_id == customer_user.id))
    rows = result.scalars().all()
    assert len(rows) == 1
    assert rows[0].type == "booking_paid"
    assert rows[0].data["type"] == "booking_paid"


@pytest.mark.asyncio
async def test_notify_once_separate_events_both_sent(db: AsyncSession, customer_user: User):
    cache = MemoryCache()
    booking_id = uuid.uuid4()
    for event in ("booking_accept", "booking_mark-completed"):
        sent = await notify_once(
            cache, db, event=event, booking_id=booking_id, user_id=customer_user.id,
            notification_type=NotificationType.BOOKING_ACCEPTED, title="t", body="b",
        )
        assert sent is True


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_presence_set_and_expire():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    online, silent = uuid.uuid4(), uuid.uuid4()

    record = await set_presence(cache, online, PresenceStatus.BUSY)
    assert record["status"] == "busy"

    presence = await get_presence(cache, [online, silent])
    assert list(presence) == [str(online)]
    assert presence[str(online)]["status"] == "busy"

    clock.now += 5 * 60
    assert await get_presence(cache, [online]) == {}
