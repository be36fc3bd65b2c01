import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import EarningStatus
from app.models.types import GUID


class ProviderEarning(Base):
    """Ledger row for one settled payment event.

    Only system processes (payment settlement, payout jobs, refund handlers)
    mutate these rows; they are never deleted.
    """

    __tablename__ = "provider_earnings"
    __table_args__ = (
        CheckConstraint(
            "status IN ('held', 'awaiting_payout', 'transferred', 'paid_out', 'refunded')",
            name="ck_earning_status",
        ),
        CheckConstraint(
            "platform_fee_amount >= 0 AND net_amount >= 0 AND gross_amount = platform_fee_amount + net_amount",
            name="ck_earning_amounts",
        ),
        CheckConstraint(
            "booking_id IS NOT NULL OR job_payment_id IS NOT NULL",
            name="ck_earning_source",
        ),
        Index("ix_earning_status_updated", "status", "updated_at"),
        Index("ix_earning_status_payout_attempt", "status", "last_payout_attempt_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("bookings.id", ondelete="RESTRICT"), unique=True, nullable=True
    )
    job_payment_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("job_payments.id", ondelete="RESTRICT"), unique=True, nullable=True
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("provider_profiles.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    gross_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    gst_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    net_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="nzd")
    status: Mapped[EarningStatus] = mapped_column(String(20), nullable=False, default=EarningStatus.HELD)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payout_failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transferred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Written on every payout attempt, whatever the outcome
    last_payout_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    provider: Mapped["ProviderProfile"] = relationship("ProviderProfile", lazy="raise")

    @property
    def payout_settled(self) -> bool:
        return bool(self.stripe_transfer_id) or self.status in (
            EarningStatus.PAID_OUT,
            EarningStatus.TRANSFERRED,
        )
