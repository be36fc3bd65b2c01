import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.enums import PayoutRequestStatus
from app.models.types import GUID


class PayoutRequest(Base):
    __tablename__ = "provider_payout_requests"
    __table_args__ = (
        UniqueConstraint("provider_id", "idempotency_key", name="uq_payout_request_idempotency"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="nzd")
    status: Mapped[PayoutRequestStatus] = mapped_column(
        String(20), nullable=False, default=PayoutRequestStatus.QUEUED
    )
    idempotency_key: Mapped[str] = mapped_column(String(100), nullable=False)
    payouts_disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    note: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
