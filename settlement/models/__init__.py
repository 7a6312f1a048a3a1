from settlement.models.database import Base, get_db
from settlement.models.user import User
from settlement.models.provider import ProviderProfile
from settlement.models.order import Dispute, Order, OrderEvent
from settlement.models.fee_config import PlatformFeeConfig
from settlement.models.ledger import AccountBalance, BalanceTransaction
from settlement.models.failed_payment import FailedPayment
from settlement.models.payout import PayoutPreferences, PayoutRequest
from settlement.models.payment_method import SavedPaymentMethod
from settlement.models.exchange_rate import ExchangeRate

__all__ = [
    "Base",
    "get_db",
    "User",
    "ProviderProfile",
    "Order",
    "OrderEvent",
    "Dispute",
    "PlatformFeeConfig",
    "AccountBalance",
    "BalanceTransaction",
    "FailedPayment",
    "PayoutRequest",
    "PayoutPreferences",
    "SavedPaymentMethod",
    "ExchangeRate",
]
