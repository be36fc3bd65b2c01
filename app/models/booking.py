import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import BookingStatus, CancellationActor
from app.models.types import GUID

_BOOKING_STATUSES = ", ".join(f"'{s.value}'" for s in BookingStatus)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("price_at_booking >= 0", name="ck_booking_price_positive"),
        CheckConstraint(
            "provider_quoted_price IS NULL OR provider_quoted_price > 0",
            name="ck_booking_quoted_price_positive",
        ),
        CheckConstraint(f"status IN ({_BOOKING_STATUSES})", name="ck_booking_status_valid"),
        Index("ix_booking_customer_created", "customer_id", "created_at"),
        Index("ix_booking_provider_scheduled", "provider_id", "scheduled_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("provider_profiles.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("services.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    status: Mapped[BookingStatus] = mapped_column(
        String(30), nullable=False, default=BookingStatus.REQUESTED, index=True
    )
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    price_at_booking: Mapped[int] = mapped_column(Integer, nullable=False)
    provider_quoted_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    customer_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    decline_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by_provider_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Stamped each time the auto-confirm job picks the booking up
    auto_confirm_attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    customer: Mapped["User"] = relationship("User", foreign_keys=[customer_id], lazy="raise")
    provider: Mapped["ProviderProfile"] = relationship("ProviderProfile", lazy="raise")
    service: Mapped["Service"] = relationship("Service", lazy="raise")
    cancellation: Mapped["BookingCancellation | None"] = relationship(
        "BookingCancellation", back_populates="booking", uselist=False, lazy="raise"
    )


class BookingCancellation(Base):
    __tablename__ = "booking_cancellations"
    __table_args__ = (
        CheckConstraint("actor IN ('customer', 'provider')", name="ck_cancellation_actor"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bookings.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    actor: Mapped[CancellationActor] = mapped_column(String(10), nullable=False)
    actor_user_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    booking: Mapped["Booking"] = relationship("Booking", back_populates="cancellation", lazy="raise")
