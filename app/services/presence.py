import time
import uuid

from app.config import settings
from app.models.enums import PresenceStatus
from app.services.cache import Cache


def _key(user_id) -> str:
    return f"presence:{user_id}"


async def set_presence(cache: Cache, user_id: uuid.UUID, status: PresenceStatus) -> dict:
    record = {"status": PresenceStatus(status).value, "last_active": int(time.time())}
    await cache.set(_key(user_id), record, settings.PRESENCE_TTL_SECONDS)
    return record


async def get_presence(cache: Cache, user_ids: list[uuid.UUID]) -> dict[str, dict]:
    """Presence records for the given users; expired or unknown users are omitted."""
    results: dict[str, dict] = {}
    for user_id in user_ids:
        record = await cache.get(_key(user_id))
        if record:
            results[str(user_id)] = record
    return results
