import uuid
from datetime import datetime, time

from pydantic import BaseModel, Field, model_validator

from app.models.enums import PricingType


class ScheduleDay(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: time
    end_time: time
    is_enabled: bool = True

    @model_validator(mode="after")
    def check_window(self) -> "ScheduleDay":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ScheduleUpdateRequest(BaseModel):
    days: list[ScheduleDay] = Field(max_length=7)

    @model_validator(mode="after")
    def unique_days(self) -> "ScheduleUpdateRequest":
        seen = [d.day_of_week for d in self.days]
        if len(seen) != len(set(seen)):
            raise ValueError("each day_of_week may appear once")
        return self


class TimeOffCreateRequest(BaseModel):
    start_at: datetime
    end_at: datetime
    reason: str | None = Field(None, max_length=500)

    @model_validator(mode="after")
    def check_window(self) -> "TimeOffCreateRequest":
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self


class PayoutRequestCreate(BaseModel):
    idempotency_key: str = Field(min_length=8, max_length=100)
    note: str | None = Field(None, max_length=255)


class EarningsSummaryResponse(BaseModel):
    currency: str
    lifetime_paid_out_cents: int
    last_30_days_paid_out_cents: int
    pending_payout_cents: int
    held_cents: int
    refunded_cents: int


class TaxDocTotals(BaseModel):
    gross: int
    fee: int
    gst: int
    net: int
    payouts_received: int
    outstanding_net: int


class TaxDocMonth(BaseModel):
    month: str
    gross: int
    fee: int
    gst: int
    net: int


class TaxDocResponse(BaseModel):
    """Yearly earnings statement for a provider's GST return."""

    provider_id: uuid.UUID
    business_name: str
    charges_gst: bool
    year: int
    currency: str
    totals: TaxDocTotals
    monthly: list[TaxDocMonth]


class ServiceCreateRequest(BaseModel):
    title: str = Field(min_length=3, max_length=200)
    description: str | None = Field(None, max_length=2000)
    pricing_type: PricingType
    # Ignored for quote-only services
    price_in_cents: int | None = Field(None, gt=0, le=10_000_000)
    # None falls back to the provider's GST registration
    charges_gst: bool | None = None

    @model_validator(mode="after")
    def check_price(self) -> "ServiceCreateRequest":
        if self.pricing_type != PricingType.QUOTE and self.price_in_cents is None:
            raise ValueError("price_in_cents is required for fixed and from pricing")
        return self


class ServiceResponse(BaseModel):
    id: uuid.UUID
    provider_id: uuid.UUID
    title: str
    description: str | None
    pricing_type: str
    price_in_cents: int
    charges_gst: bool | None
    is_active: bool

    model_config = {"from_attributes": True}
