import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.enums import BookingStatus, ProviderBookingAction, RescheduleStatus


def _aware(v: datetime) -> datetime:
    # Naive datetimes from clients are taken as UTC
    return v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v.astimezone(timezone.utc)


class BookingCreateRequest(BaseModel):
    service_id: uuid.UUID
    scheduled_date: datetime
    customer_note: str | None = Field(None, max_length=2000)

    @field_validator("scheduled_date")
    @classmethod
    def normalize_date(cls, v: datetime) -> datetime:
        return _aware(v)


class BookingStatusUpdateRequest(BaseModel):
    action: ProviderBookingAction
    reason: str | None = Field(None, max_length=1000)
    final_price_in_cents: int | None = Field(None, gt=0)

    @model_validator(mode="after")
    def require_reason(self) -> "BookingStatusUpdateRequest":
        if self.action in (ProviderBookingAction.DECLINE, ProviderBookingAction.CANCEL):
            if not self.reason or not self.reason.strip():
                raise ValueError("reason is required to decline or cancel a booking")
        return self


class BookingCancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class RescheduleRequest(BaseModel):
    proposed_date: datetime
    note: str | None = Field(None, max_length=1000)

    @field_validator("proposed_date")
    @classmethod
    def normalize_date(cls, v: datetime) -> datetime:
        return _aware(v)


class RescheduleRespondRequest(BaseModel):
    decision: Literal["approve", "decline"]
    reschedule_id: uuid.UUID | None = None
    note: str | None = Field(None, max_length=1000)


class ReviewCreateRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(None, max_length=2000)


class DisputeOpenRequest(BaseModel):
    reason: str = Field(min_length=3, max_length=100)
    description: str | None = Field(None, max_length=2000)


class BookingResponse(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    service_id: uuid.UUID
    status: BookingStatus
    scheduled_date: datetime
    price_at_booking: int
    provider_quoted_price: int | None
    payment_intent_id: str | None
    customer_note: str | None
    decline_reason: str | None
    accepted_at: datetime | None
    paid_at: datetime | None
    completed_by_provider_at: datetime | None
    completed_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class RescheduleResponse(BaseModel):
    id: uuid.UUID
    booking_id: uuid.UUID
    proposed_date: datetime
    status: RescheduleStatus
    responded_at: datetime | None = None

    model_config = {"from_attributes": True}


class PayBookingResponse(BaseModel):
    booking_id: uuid.UUID
    payment_intent_id: str
    client_secret: str | None
    status: BookingStatus
    total_charge_cents: int
    platform_fee_cents: int
    provider_amount_cents: int
    currency: str
