import hashlib
import json
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.services.cache import Cache


def _segment(value) -> str:
    return str(value) if value not in (None, "") else "none"


def hash_payload(payload: Any) -> str:
    normalized = payload if isinstance(payload, str) else json.dumps(payload or {}, sort_keys=True, default=str)
    return hashlib.sha256(normalized.encode()).hexdigest()


def booking_idempotency_key(action: str, user_id, booking_id=None, payload: Any = None) -> str:
    resource = booking_id if booking_id else (hash_payload(payload) if payload is not None else None)
    return f"booking:{_segment(action)}:{_segment(user_id)}:{_segment(resource)}"


def notification_idempotency_key(event: str, booking_id, user_id) -> str:
    return f"notify:{_segment(event)}:{_segment(booking_id)}:{_segment(user_id)}"


async def with_idempotency(
    cache: Cache,
    key: str,
    ttl: int,
    fn: Callable[[], Awaitable[Any]],
    db: AsyncSession | None = None,
) -> Any:
    """Run ``fn`` once per ``key`` within ``ttl`` seconds.

    A replay returns the stored result without calling ``fn``. Failures are
    not stored, so a failed call can be retried with the same key. When
    ``db`` is given it is committed before the result is stored, and a failed
    commit leaves nothing to replay.
    """
    cache_key = f"idem:{key}"
    stored = await cache.get(cache_key)
    if stored is not None:
        return stored
    result = await fn()
    if db is not None:
        await db.commit()
    await cache.set(cache_key, result, ttl)
    return result
