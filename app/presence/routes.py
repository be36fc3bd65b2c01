import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.dependencies import Actor, get_actor
from app.schemas.presence import PresenceUpdateRequest
from app.services.cache import Cache, get_cache
from app.services.presence import get_presence, set_presence
from app.utils.rate_limit import limiter

router = APIRouter()

MAX_PRESENCE_LOOKUP = 50


@router.post("")
@limiter.limit("60/minute")
async def update_presence(
    request: Request,
    body: PresenceUpdateRequest,
    actor: Actor = Depends(get_actor),
    cache: Cache = Depends(get_cache),
):
    return await set_presence(cache, actor.user_id, body.status)


@router.get("")
@limiter.limit("60/minute")
async def read_presence(
    request: Request,
    user_ids: list[uuid.UUID] = Query(..., alias="user_id"),
    actor: Actor = Depends(get_actor),
    cache: Cache = Depends(get_cache),
):
    """Presence for up to 50 users. Users with no fresh heartbeat are omitted."""
    if len(user_ids) > MAX_PRESENCE_LOOKUP:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {MAX_PRESENCE_LOOKUP} users per lookup",
        )
    return await get_presence(cache, user_ids)
