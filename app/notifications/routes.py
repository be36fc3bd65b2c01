import structlog
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import Actor, get_actor
from app.models.enums import NotificationType
from app.models.notification import Notification
from app.schemas.notification import MarkReadRequest, NotificationPage, NotificationResponse
from app.utils.rate_limit import LIST_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()


@router.get("", response_model=NotificationPage)
@limiter.limit(LIST_RATE_LIMIT)
async def list_notifications(
    request: Request,
    unread_only: bool = False,
    notification_type: NotificationType | None = Query(None, alias="type"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0, le=10000),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """The caller's inbox, newest first, with the unread count."""
    stmt = select(Notification).where(Notification.user_id == actor.user_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    if notification_type is not None:
        stmt = stmt.where(Notification.type == notification_type.value)
    result = await db.execute(stmt.order_by(Notification.created_at.desc()).limit(limit).offset(offset))

    unread = await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == actor.user_id,
            Notification.is_read.is_(False),
        )
    )
    return NotificationPage(
        items=[NotificationResponse.model_validate(n) for n in result.scalars().all()],
        unread_count=unread.scalar_one(),
    )


@router.post("/read")
@limiter.limit("60/minute")
async def mark_read(
    request: Request,
    body: MarkReadRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    # Scoped to the caller, foreign ids are silently ignored
    stmt = update(Notification).where(
        Notification.user_id == actor.user_id,
        Notification.is_read.is_(False),
    )
    if body.ids:
        stmt = stmt.where(Notification.id.in_(body.ids))
    result = await db.execute(stmt.values(is_read=True))
    logger.info("notifications_marked_read", user_id=str(actor.user_id), count=result.rowcount)
    return {"updated": result.rowcount}
