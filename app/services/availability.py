"""Checks that a provider can take a booking at a given moment.

Weekly schedules are wall-clock windows in ``PROVIDER_TIMEZONE``; time-off
blocks and booking dates are stored in UTC.
"""
import uuid
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.availability import TimeOff, WeeklySchedule
from app.models.booking import Booking
from app.utils.booking_state import ACTIVE_STATUSES


def _conflict(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"code": code, "message": message},
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def check_schedule(db: AsyncSession, provider_id: uuid.UUID, when: datetime) -> None:
    local = _as_utc(when).astimezone(ZoneInfo(settings.PROVIDER_TIMEZONE))
    result = await db.execute(
        select(WeeklySchedule).where(
            WeeklySchedule.provider_id == provider_id,
            WeeklySchedule.day_of_week == local.weekday(),
        )
    )
    window = result.scalar_one_or_none()
    if window is None or not window.is_enabled:
        raise _conflict("outside_schedule", "Provider is not available on that day")
    if not (window.start_time <= local.time().replace(tzinfo=None) < window.end_time):
        raise _conflict("outside_schedule", "Requested time is outside provider hours")


async def check_time_off(db: AsyncSession, provider_id: uuid.UUID, when: datetime) -> None:
    moment = _as_utc(when)
    result = await db.execute(
        select(TimeOff.id).where(
            TimeOff.provider_id == provider_id,
            TimeOff.start_at <= moment,
            TimeOff.end_at > moment,
        ).limit(1)
    )
    if result.scalar_one_or_none() is not None:
        raise _conflict("time_off_conflict", "Requested time conflicts with provider time off")


async def check_booking_conflict(
    db: AsyncSession,
    provider_id: uuid.UUID,
    when: datetime,
    exclude_booking_id: uuid.UUID | None = None,
) -> None:
    query = select(Booking.id).where(
        Booking.provider_id == provider_id,
        Booking.scheduled_date == _as_utc(when),
        Booking.status.in_([s.value for s in ACTIVE_STATUSES]),
    )
    if exclude_booking_id is not None:
        query = query.where(Booking.id != exclude_booking_id)
    result = await db.execute(query.limit(1))
    if result.scalar_one_or_none() is not None:
        raise _conflict("booking_conflict", "Requested time conflicts with another booking")


async def validate_availability(
    db: AsyncSession,
    provider_id: uuid.UUID,
    when: datetime,
    exclude_booking_id: uuid.UUID | None = None,
) -> None:
    """Raise 409 unless the provider works, is not off, and is not booked at ``when``."""
    await check_schedule(db, provider_id, when)
    await check_time_off(db, provider_id, when)
    await check_booking_conflict(db, provider_id, when, exclude_booking_id)
