from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from settlement.models.database import Base


class FailedPaymentStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


TERMINAL_FAILED_PAYMENT_STATUSES = frozenset(
    {
        FailedPaymentStatus.SUCCEEDED.value,
        FailedPaymentStatus.EXHAUSTED.value,
        FailedPaymentStatus.CANCELLED.value,
    }
)

OPEN_FAILED_PAYMENT_STATUSES = [FailedPaymentStatus.PENDING.value, FailedPaymentStatus.RETRYING.value]


class FailedPayment(Base):
    __tablename__ = "failed_payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    timesheet_id = Column(String(64), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True)
    failure_code = Column(String(64), nullable=True)
    failure_message = Column(Text, nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="GBP")
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(16), nullable=False, default=FailedPaymentStatus.PENDING.value, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    resolved_at = Column(DateTime(timezone=True), nullable=True)
