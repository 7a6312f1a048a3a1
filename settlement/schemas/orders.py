from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from settlement.models.order import DisputeOutcome, OrderType


class OrderCreateRequest(BaseModel):
    seller_id: int
    order_type: OrderType
    total_amount: int = Field(gt=0, description="Total in minor units, VAT included")
    currency: str | None = Field(default=None, min_length=3, max_length=3)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "seller_id": 2,
                    "order_type": "booking",
                    "total_amount": 10000,
                    "currency": "GBP",
                }
            ]
        }
    }


class OrderActionRequest(BaseModel):
    reason: str | None = None
    expected_status: str | None = Field(
        default=None,
        description="Status the client last saw; the action is rejected if the order has moved on",
    )


class DisputeResolveRequest(BaseModel):
    outcome: DisputeOutcome
    refund_amount: int | None = Field(default=None, gt=0)
    notes: str | None = None


class SettlementBreakdownResponse(BaseModel):
    gross_amount: int
    fee_percent: Decimal
    fee_amount: int
    net_amount: int


class OrderResponse(BaseModel):
    id: int
    order_number: str
    buyer_id: int
    seller_id: int
    order_type: str
    total_amount: int
    currency: str
    fee_percent: Decimal
    platform_fee_amount: int
    vat_rate: Decimal
    vat_amount: int
    status: str
    escrow_status: str
    awaiting_approval: bool
    payment_source: str | None = None
    decline_reason: str | None = None
    cancellation_reason: str | None = None
    progress_percent: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    completion_submitted_at: datetime | None = None

    model_config = {"from_attributes": True}


class OrderDetailResponse(BaseModel):
    order: OrderResponse
    role: str
    available_actions: list[str]
    has_open_dispute: bool
    breakdown: SettlementBreakdownResponse


class AvailableActionsResponse(BaseModel):
    order_id: int
    status: str
    role: str
    available_actions: list[str]


class OrderEventResponse(BaseModel):
    id: int
    event_type: str
    actor_id: int | None = None
    details: dict | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class DisputeResponse(BaseModel):
    id: int
    order_id: int
    opened_by: int
    reason: str
    status: str
    outcome: str | None = None
    refund_amount: int | None = None
    resolution_notes: str | None = None
    resolved_by: int | None = None
    created_at: datetime | None = None
    resolved_at: datetime | None = None

    model_config = {"from_attributes": True}


class PaymentIntentResponse(BaseModel):
    payment_intent_id: str
    client_secret: str | None = None
    amount: int
    currency: str
