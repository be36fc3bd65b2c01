import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.models.enums import JobPaymentStatus, JobStatus, PaymentType, QuoteStatus


class JobCreateRequest(BaseModel):
    title: str = Field(min_length=3, max_length=200)
    description: str | None = Field(None, max_length=5000)
    budget_cents: int | None = Field(None, gt=0)


class QuoteSubmitRequest(BaseModel):
    amount_total: int = Field(gt=0)
    availability: str | None = Field(None, max_length=500)
    available_from: datetime | None = None
    included: str | None = Field(None, max_length=2000)
    excluded: str | None = Field(None, max_length=2000)
    response_speed_hours: int = Field(24, ge=1, le=24 * 30)


class AcceptQuoteRequest(BaseModel):
    quote_id: uuid.UUID


class JobLifecycleRequest(BaseModel):
    status: Literal["in_progress", "completed"]


class JobResponse(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    title: str
    description: str | None
    budget_cents: int | None
    status: JobStatus
    assigned_provider_id: uuid.UUID | None
    accepted_quote_id: uuid.UUID | None
    total_price: int | None
    deposit_amount: int | None
    remaining_amount: int | None
    payment_status: JobPaymentStatus
    created_at: datetime

    model_config = {"from_attributes": True}


class QuoteResponse(BaseModel):
    id: uuid.UUID
    job_request_id: uuid.UUID
    provider_id: uuid.UUID
    amount_total: int
    availability: str | None
    available_from: datetime | None
    included: str | None
    excluded: str | None
    response_speed_hours: int
    status: QuoteStatus
    score: float | None = None

    model_config = {"from_attributes": True}


class JobPaymentResponse(BaseModel):
    job_request_id: uuid.UUID
    payment_id: uuid.UUID
    payment_intent_id: str
    client_secret: str | None
    payment_type: PaymentType
    payment_status: JobPaymentStatus
    amount_total: int
    platform_fee_amount: int
    provider_amount: int
    remaining_amount: int
