import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import ProviderPlan
from app.models.types import GUID


class ProviderProfile(Base):
    __tablename__ = "provider_profiles"
    __table_args__ = (
        CheckConstraint("plan IN ('starter', 'pro', 'elite')", name="ck_provider_plan"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    business_name: Mapped[str] = mapped_column(String(200), nullable=False)
    # Pro/Elite pay a subscription instead of a per-transaction platform fee
    plan: Mapped[ProviderPlan] = mapped_column(String(20), nullable=False, default=ProviderPlan.STARTER)
    stripe_connect_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    charges_gst: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_suspended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    suspension_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    suspended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped["User"] = relationship("User", back_populates="provider_profile", lazy="raise")

    @property
    def has_connect_account(self) -> bool:
        return bool(self.stripe_connect_id and self.stripe_connect_id.startswith("acct_"))
