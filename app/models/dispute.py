import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import DisputeResolution, DisputeStatus
from app.models.types import GUID


class DisputeCase(Base):
    __tablename__ = "dispute_cases"
    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'resolved', 'closed')",
            name="ck_dispute_cases_status_valid",
        ),
        CheckConstraint(
            "resolution IS NULL OR resolution IN ('customer', 'provider')",
            name="ck_dispute_cases_resolution_valid",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bookings.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    opened_by: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    # Set when the dispute was opened by a Stripe chargeback
    stripe_dispute_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[DisputeStatus] = mapped_column(
        String(20), nullable=False, default=DisputeStatus.OPEN
    )
    resolution: Mapped[DisputeResolution | None] = mapped_column(String(20), nullable=True)
    refund_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by_admin: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    booking: Mapped["Booking"] = relationship("Booking", lazy="raise")
