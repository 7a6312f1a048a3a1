from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from settlement.models.database import Base


class TransactionType(str, Enum):
    TOP_UP = "top_up"
    SPEND = "spend"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class AccountBalance(Base):
    __tablename__ = "account_balances"
    __table_args__ = (CheckConstraint("balance_amount >= 0", name="ck_account_balances_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)
    balance_amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="GBP")
    last_topped_up_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class BalanceTransaction(Base):
    """Append-only ledger row. Never updated or deleted once written."""

    __tablename__ = "balance_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    transaction_type = Column(String(32), nullable=False)  # top_up | spend | refund | adjustment
    amount = Column(Integer, nullable=False)  # positive credits, negative debits
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reference_type = Column(String(32), nullable=True)  # order | stripe_topup | manual
    reference_id = Column(Integer, nullable=True)
    idempotency_key = Column(String(255), unique=True, nullable=True, index=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
