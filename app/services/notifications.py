import asyncio
import uuid
from html import escape
from typing import Set

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.enums import NotificationType
from app.models.notification import Notification
from app.services.cache import Cache
from app.services.idempotency import notification_idempotency_key
from app.utils.log_mask import mask_email

logger = structlog.get_logger()

RESEND_API_URL = "https://api.resend.com/emails"

# Keep references to background tasks to prevent GC collection
_background_tasks: Set[asyncio.Task] = set()

_email_client: httpx.AsyncClient | None = None


def _get_email_client() -> httpx.AsyncClient:
    global _email_client
    if _email_client is None or _email_client.is_closed:
        _email_client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0),
        )
    return _email_client


async def send_email(to_email: str, subject: str, body: str) -> bool:
    """Send an email via the Resend API.

    Without RESEND_API_KEY the message is only logged and treated as sent.
    """
    if not settings.RESEND_API_KEY:
        logger.info("email_send_dev_mode", to=mask_email(to_email), subject=subject)
        return True

    try:
        response = await _get_email_client().post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
            json={
                "from": settings.EMAIL_FROM,
                "to": [to_email],
                "subject": subject,
                "html": body,
            },
        )
    except httpx.HTTPError as exc:
        logger.error("email_send_error", to=mask_email(to_email), subject=subject, error=str(exc))
        return False

    if response.is_success:
        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True
    logger.error(
        "email_send_failed",
        to=mask_email(to_email),
        subject=subject,
        status_code=response.status_code,
    )
    return False


def _send_email_in_background(to_email: str, subject: str, body: str) -> None:
    task = asyncio.create_task(send_email(to_email, subject, f"<p>{escape(body)}</p>"))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def create_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    notification_type: NotificationType | str,
    title: str,
    body: str,
    data: dict | None = None,
    email: str | None = None,
) -> Notification:
    """Persist an in-app notification, and email it when ``email`` is given."""
    type_value = notification_type.value if hasattr(notification_type, "value") else notification_type
    payload = dict(data) if data else {}
    payload.setdefault("type", type_value)

    notification = Notification(
        user_id=user_id,
        type=type_value,
        title=title,
        body=body,
        data=payload,
    )
    db.add(notification)
    await db.flush()
    if email:
        # Email is fire-and-forget; the in-app row above is the record
        _send_email_in_background(email, title, body)
    return notification


async def notify_once(
    cache: Cache,
    db: AsyncSession,
    event: str,
    booking_id,
    user_id: uuid.UUID,
    notification_type: NotificationType,
    title: str,
    body: str,
    data: dict | None = None,
    email: str | None = None,
) -> bool:
    """Notify ``user_id`` about ``event`` at most once per booking.

    Returns False when the notification was already sent within the
    de-duplication window. Failures are logged and never raised.
    """
    key = notification_idempotency_key(event, booking_id, user_id)
    if await cache.get(key):
        logger.info("notification_deduplicated", event=event, booking_id=str(booking_id))
        return False
    try:
        await create_notification(
            db=db,
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            body=body,
            data=data,
            email=email,
        )
    except Exception:
        logger.exception("notification_failed", event=event, booking_id=str(booking_id))
        return False
    await cache.set(key, True, settings.NOTIFY_ONCE_TTL_SECONDS)
    return True
