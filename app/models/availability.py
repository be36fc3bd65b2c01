import uuid
from datetime import datetime, time

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Text, Time, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.types import GUID


class WeeklySchedule(Base):
    """Recurring working window for one weekday (0 = Monday)."""

    __tablename__ = "provider_weekly_schedules"
    __table_args__ = (
        UniqueConstraint("provider_id", "day_of_week", name="uq_schedule_provider_day"),
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_schedule_day_range"),
        CheckConstraint("end_time > start_time", name="ck_schedule_window"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class TimeOff(Base):
    __tablename__ = "provider_time_off"
    __table_args__ = (
        CheckConstraint("end_at > start_at", name="ck_time_off_window"),
        Index("ix_time_off_provider_window", "provider_id", "start_at", "end_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False
    )
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
