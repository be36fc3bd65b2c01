import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.enums import RefundStatus
from app.models.types import GUID


class Refund(Base):
    __tablename__ = "refunds"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_refund_amount_positive"),
        CheckConstraint("status IN ('processing', 'completed', 'failed')", name="ck_refund_status"),
        CheckConstraint(
            "booking_id IS NOT NULL OR job_request_id IS NOT NULL",
            name="ck_refund_target",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("bookings.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    job_request_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("job_requests.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[RefundStatus] = mapped_column(String(20), nullable=False, default=RefundStatus.PROCESSING)
    stripe_refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    platform_fee_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_amount_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_by: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
