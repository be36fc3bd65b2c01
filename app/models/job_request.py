import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import JobPaymentStatus, JobStatus, PaymentType, QuoteStatus
from app.models.types import GUID


class JobRequest(Base):
    """A job posted to the open marketplace; providers answer with quotes."""

    __tablename__ = "job_requests"
    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'assigned', 'in_progress', 'completed', 'closed', 'cancelled', 'expired')",
            name="ck_job_status",
        ),
        CheckConstraint(
            "total_price IS NULL OR total_price > 0", name="ck_job_total_positive"
        ),
        CheckConstraint(
            "remaining_amount IS NULL OR remaining_amount >= 0", name="ck_job_remaining_positive"
        ),
        Index("ix_job_status_created", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    budget_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[JobStatus] = mapped_column(String(20), nullable=False, default=JobStatus.OPEN)
    assigned_provider_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("provider_profiles.id", ondelete="SET NULL"), nullable=True, index=True
    )
    accepted_quote_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    total_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deposit_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    remaining_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_status: Mapped[JobPaymentStatus] = mapped_column(
        String(20), nullable=False, default=JobPaymentStatus.UNPAID
    )
    lifecycle_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    quotes: Mapped[list["JobQuote"]] = relationship("JobQuote", back_populates="job_request", lazy="raise")


class JobQuote(Base):
    __tablename__ = "job_quotes"
    __table_args__ = (
        UniqueConstraint("job_request_id", "provider_id", name="uq_quote_job_provider"),
        CheckConstraint("amount_total > 0", name="ck_quote_amount_positive"),
        CheckConstraint("response_speed_hours >= 1", name="ck_quote_response_speed"),
        CheckConstraint(
            "status IN ('submitted', 'accepted', 'rejected', 'withdrawn')",
            name="ck_quote_status",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    job_request_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("job_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount_total: Mapped[int] = mapped_column(Integer, nullable=False)
    availability: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Earliest date the provider can start, used for ranking
    available_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    included: Mapped[str | None] = mapped_column(Text, nullable=True)
    excluded: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_speed_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    status: Mapped[QuoteStatus] = mapped_column(String(20), nullable=False, default=QuoteStatus.SUBMITTED)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    job_request: Mapped["JobRequest"] = relationship("JobRequest", back_populates="quotes", lazy="raise")
    provider: Mapped["ProviderProfile"] = relationship("ProviderProfile", lazy="raise")


class JobPayment(Base):
    __tablename__ = "job_payments"
    __table_args__ = (
        CheckConstraint("payment_type IN ('deposit', 'remainder', 'full')", name="ck_job_payment_type"),
        CheckConstraint(
            "payment_status IN ('pending', 'deposit_paid', 'fully_paid', 'refunded', 'partially_refunded', 'failed')",
            name="ck_job_payment_status",
        ),
        CheckConstraint("amount_total > 0", name="ck_job_payment_amount_positive"),
        CheckConstraint(
            "platform_fee_amount >= 0 AND provider_amount >= 0 "
            "AND platform_fee_amount + provider_amount = amount_total",
            name="ck_job_payment_split_sums",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    job_request_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("job_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quote_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("job_quotes.id", ondelete="RESTRICT"), nullable=False
    )
    stripe_payment_intent_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    payment_type: Mapped[PaymentType] = mapped_column(String(20), nullable=False)
    amount_total: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    provider_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_status: Mapped[JobPaymentStatus] = mapped_column(
        String(20), nullable=False, default=JobPaymentStatus.PENDING
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
