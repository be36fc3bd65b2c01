import uuid
from typing import Literal

from pydantic import BaseModel, Field


class OnboardResponse(BaseModel):
    account_id: str
    onboarding_url: str


class DisputeResolveRequest(BaseModel):
    dispute_id: uuid.UUID
    resolution: Literal["customer", "provider"]
    # Customer resolutions refund the full refundable amount unless set
    refund_amount_cents: int | None = Field(None, gt=0)
    resolution_notes: str = Field(default="", max_length=2000)
