from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class SupportedCurrency(str, Enum):
    GBP = "GBP"
    EUR = "EUR"
    USD = "USD"


class FeeQuoteResponse(BaseModel):
    gross_amount: int
    fee_percent: Decimal
    fee_amount: int
    net_amount: int


class BalanceResponse(BaseModel):
    balance_amount: int
    currency: str
    last_topped_up_at: datetime | None = None


class BalanceTransactionResponse(BaseModel):
    id: int
    transaction_type: str
    amount: int
    balance_before: int
    balance_after: int
    reference_type: str | None = None
    reference_id: int | None = None
    description: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class TopUpRequest(BaseModel):
    amount: int = Field(gt=0, description="Amount in minor units")
    payment_method_id: str | None = None

    model_config = {"json_schema_extra": {"examples": [{"amount": 2000}]}}


class TopUpIntentResponse(BaseModel):
    payment_intent_id: str
    client_secret: str | None = None
    amount: int
    currency: str


class TopUpConfirmRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)


class LedgerResultResponse(BaseModel):
    success: bool
    new_balance: int
    error_message: str | None = None


class FailedPaymentResponse(BaseModel):
    id: int
    order_id: int | None = None
    amount: int
    currency: str
    failure_code: str | None = None
    failure_message: str | None = None
    retry_count: int
    max_retries: int
    status: str
    last_retry_at: datetime | None = None
    next_retry_at: datetime | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class RetryRequest(BaseModel):
    payment_method_id: str = Field(min_length=1)


class RetryResultResponse(BaseModel):
    success: bool
    error: str | None = None


class SavePaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(min_length=1)
    set_as_default: bool = False


class SavedPaymentMethodResponse(BaseModel):
    id: int
    stripe_payment_method_id: str
    card_brand: str | None = None
    card_last_four: str | None = None
    card_exp_month: int | None = None
    card_exp_year: int | None = None
    is_default: bool
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class CurrencyPreference(BaseModel):
    currency: SupportedCurrency


class ConversionResponse(BaseModel):
    amount: int
    from_currency: SupportedCurrency
    to_currency: SupportedCurrency
    converted_amount: int
    rate: Decimal
