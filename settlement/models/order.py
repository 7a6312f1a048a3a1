from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from settlement.models.database import Base


class OrderType(str, Enum):
    BOOKING = "booking"
    PRODUCT_REQUEST = "product_request"
    SERVICE = "service"


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    IN_PROGRESS = "in_progress"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EscrowStatus(str, Enum):
    PENDING = "pending"
    HELD = "held"
    PARTIAL_RELEASE = "partial_release"
    RELEASED = "released"
    REFUNDED = "refunded"


class PaymentSource(str, Enum):
    CARD = "card"
    BALANCE = "balance"


class DisputeStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class DisputeOutcome(str, Enum):
    RELEASE = "release"
    REFUND = "refund"
    SPLIT = "split"
    RESUME = "resume"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(32), unique=True, nullable=False, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_type = Column(String(32), nullable=False)  # booking | product_request | service

    total_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="GBP")
    fee_percent = Column(Numeric(5, 2), nullable=False)
    platform_fee_amount = Column(Integer, nullable=False)
    vat_rate = Column(Numeric(5, 4), nullable=False)
    vat_amount = Column(Integer, nullable=False)

    status = Column(String(32), nullable=False, default=OrderStatus.PENDING.value, index=True)
    escrow_status = Column(String(32), nullable=False, default=EscrowStatus.PENDING.value)
    awaiting_approval = Column(Boolean, nullable=False, default=False)
    completion_submitted_at = Column(DateTime(timezone=True), nullable=True)

    payment_source = Column(String(16), nullable=True)  # card | balance
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)
    decline_reason = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # UI convenience state, not part of settlement invariants
    progress_percent = Column(Integer, nullable=False, default=0)
    last_nudged_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)


class OrderEvent(Base):
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Dispute(Base):
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    opened_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=DisputeStatus.OPEN.value, index=True)
    outcome = Column(String(16), nullable=True)  # release | refund | split | resume
    refund_amount = Column(Integer, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    resolved_at = Column(DateTime(timezone=True), nullable=True)
