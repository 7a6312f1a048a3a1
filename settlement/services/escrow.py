"""
Escrow side effects of order transitions.

Functions here return the column values a transition must write together with
the status change; the caller applies them in one compare-and-set update.
"""
import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from settlement.errors import InsufficientFunds, ValidationError
from settlement.models import Order
from settlement.models.ledger import TransactionType
from settlement.models.order import EscrowStatus, PaymentSource
from settlement.services import ledger
from settlement.services.fees import FeeBreakdown

logger = logging.getLogger(__name__)

_REFUNDABLE = frozenset(
    {EscrowStatus.HELD.value, EscrowStatus.RELEASED.value, EscrowStatus.PARTIAL_RELEASE.value}
)


def settlement_breakdown(order: Order) -> FeeBreakdown:
    """Seller payout split from the fee snapshot stored on the order at creation."""
    return FeeBreakdown(
        gross_amount=order.total_amount,
        fee_percent=Decimal(str(order.fee_percent)),
        fee_amount=order.platform_fee_amount,
        net_amount=order.total_amount - order.platform_fee_amount,
    )


def ensure_held(order: Order) -> None:
    if order.escrow_status != EscrowStatus.HELD.value:
        logger.warning(
            "Refusing escrow release for order %s: escrow_status=%s",
            order.id,
            order.escrow_status,
        )
        raise ValidationError("Cannot release payment - escrow is not held")


def release_values(order: Order, now: datetime) -> dict:
    ensure_held(order)
    return {
        Order.escrow_status: EscrowStatus.RELEASED.value,
        Order.completed_at: now,
        Order.awaiting_approval: False,
    }


def partial_release_values(order: Order, now: datetime) -> dict:
    if order.escrow_status not in {EscrowStatus.HELD.value, EscrowStatus.RELEASED.value}:
        raise ValidationError("Cannot split payment - escrow is not funded")
    return {
        Order.escrow_status: EscrowStatus.PARTIAL_RELEASE.value,
        Order.completed_at: now,
        Order.awaiting_approval: False,
    }


def refund_values(order: Order) -> dict:
    """Captured funds go back to the buyer; an uncaptured escrow has nothing to refund."""
    if order.escrow_status in _REFUNDABLE:
        return {Order.escrow_status: EscrowStatus.REFUNDED.value}
    return {}


def refund_buyer_wallet(db: Session, order: Order, amount: int, reason: str) -> None:
    """Credit a wallet-funded order's refund back to the buyer, once per order."""
    if order.payment_source != PaymentSource.BALANCE.value or amount <= 0:
        return
    result = ledger.apply_adjustment(
        db,
        user_id=order.buyer_id,
        amount=amount,
        transaction_type=TransactionType.REFUND.value,
        idempotency_key=f"order:{order.id}:refund",
        description=reason,
        reference_type="order",
        reference_id=order.id,
    )
    if not result.success:
        raise ValidationError(result.error_message or "Refund to balance failed")


def spend_from_wallet(db: Session, order: Order) -> None:
    result = ledger.apply_adjustment(
        db,
        user_id=order.buyer_id,
        amount=-order.total_amount,
        transaction_type=TransactionType.SPEND.value,
        idempotency_key=f"order:{order.id}:payment",
        description=f"Payment for order {order.order_number}",
        reference_type="order",
        reference_id=order.id,
    )
    if not result.success:
        raise InsufficientFunds(result.error_message or "Insufficient balance")
