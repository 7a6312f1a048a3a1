from settlement.schemas.billing import (
    BalanceResponse,
    BalanceTransactionResponse,
    FeeQuoteResponse,
    TopUpIntentResponse,
)
from settlement.schemas.orders import (
    OrderActionRequest,
    OrderCreateRequest,
    OrderDetailResponse,
    OrderResponse,
)
from settlement.schemas.payouts import PayoutPreferencesResponse, PayoutRequestResponse

__all__ = [
    "BalanceResponse",
    "BalanceTransactionResponse",
    "FeeQuoteResponse",
    "TopUpIntentResponse",
    "OrderActionRequest",
    "OrderCreateRequest",
    "OrderDetailResponse",
    "OrderResponse",
    "PayoutPreferencesResponse",
    "PayoutRequestResponse",
]
