from datetime import datetime

from pydantic import BaseModel, Field

from settlement.models.payout import PayoutSchedule


class PayoutPreferencesResponse(BaseModel):
    provider_id: int
    payout_schedule: str
    minimum_payout_amount: int
    preferred_payout_day: int | None = None
    instant_payout_enabled: bool = False

    model_config = {"from_attributes": True}


class PayoutPreferencesUpdate(BaseModel):
    payout_schedule: PayoutSchedule | None = None
    minimum_payout_amount: int | None = Field(default=None, ge=100)
    preferred_payout_day: int | None = Field(default=None, ge=1, le=28)
    instant_payout_enabled: bool | None = None


class PayoutRequestCreate(BaseModel):
    amount: int = Field(gt=0, description="Amount in minor units")


class PayoutRequestResponse(BaseModel):
    id: int
    amount: int
    currency: str
    status: str
    stripe_payout_id: str | None = None
    failure_reason: str | None = None
    requested_at: datetime | None = None
    processed_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}
