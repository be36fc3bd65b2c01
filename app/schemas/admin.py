import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class AdminRefundRequest(BaseModel):
    # Omitted amount refunds everything still refundable
    amount_cents: int | None = Field(None, gt=0)
    reason: str = Field(min_length=3, max_length=50)
    description: str | None = Field(None, max_length=2000)


class PayoutExceptionResponse(BaseModel):
    id: uuid.UUID
    booking_id: uuid.UUID | None
    job_payment_id: uuid.UUID | None
    provider_id: uuid.UUID
    net_amount: int
    status: str
    payout_failure_reason: str | None
    updated_at: datetime

    model_config = {"from_attributes": True}


class AuditLogResponse(BaseModel):
    id: uuid.UUID
    action: str
    admin_user_id: uuid.UUID
    target_type: str | None
    target_id: str | None
    detail: str | None
    metadata_json: dict | None
    created_at: datetime

    model_config = {"from_attributes": True}


class ProviderSuspendRequest(BaseModel):
    reason: str = Field(min_length=3, max_length=500)


class ProviderSuspensionResponse(BaseModel):
    id: uuid.UUID
    business_name: str
    is_suspended: bool
    suspension_reason: str | None
    suspended_at: datetime | None

    model_config = {"from_attributes": True}
