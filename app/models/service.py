import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import PricingType
from app.models.types import GUID


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (
        CheckConstraint("price_in_cents >= 0", name="ck_service_price_positive"),
        CheckConstraint("pricing_type IN ('fixed', 'from', 'quote')", name="ck_service_pricing_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    pricing_type: Mapped[PricingType] = mapped_column(String(10), nullable=False, default=PricingType.FIXED)
    price_in_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # NULL falls back to the provider's GST registration
    charges_gst: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    provider: Mapped["ProviderProfile"] = relationship("ProviderProfile", lazy="raise")

    @property
    def needs_quote(self) -> bool:
        return self.pricing_type in (PricingType.QUOTE, PricingType.FROM)
