"""
Order lifecycle operations.

``perform_order_action`` is the only way an order's status changes outside
dispute resolution. Each call checks the acting party against the transition
table, then writes the new status with a compare-and-set on the status it read,
so two actors racing on the same order cannot both win.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import or_
from sqlalchemy.orm import Session

from settlement.config import settings
from settlement.errors import (
    ConflictingTransition,
    EngineError,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from settlement.models import Dispute, Order, User
from settlement.models.order import EscrowStatus, OrderStatus, OrderType, PaymentSource
from settlement.services import audit, escrow, fees, payment_processor
from settlement.services.fees import FeeBreakdown
from settlement.services.order_machine import (
    OrderAction,
    OrderRole,
    TERMINAL_FAILURE_STATUSES,
    available_actions,
    get_transition,
)
from settlement.services.order_store import (
    compare_and_set_escrow,
    compare_and_set_status,
    has_open_dispute,
    load_order_for_actor,
    new_order_number,
)
from settlement.services.timeutils import utcnow

logger = logging.getLogger(__name__)

ORDER_PAYMENT_METADATA_TYPE = "order_payment"


@dataclass(frozen=True)
class OrderDetail:
    order: Order
    role: str
    available_actions: list[str]
    breakdown: FeeBreakdown
    has_open_dispute: bool


def requires_buyer_approval(order: Order) -> bool:
    return order.order_type in settings.APPROVAL_REQUIRED_ORDER_TYPES


def create_order(
    db: Session,
    buyer: User,
    seller_id: int,
    order_type: str,
    total_amount: int,
    currency: str | None = None,
) -> Order:
    """Create a pending order with its fee and VAT snapshot."""
    if order_type not in {t.value for t in OrderType}:
        raise ValidationError(f"Unknown order type: {order_type}")
    if total_amount <= 0:
        raise ValidationError("Order total must be positive")
    if seller_id == buyer.id:
        raise ValidationError("Cannot place an order with yourself")

    seller = db.query(User).filter(User.id == seller_id).first()
    if seller is None:
        raise NotFound("Seller not found")

    breakdown = fees.quote_fee(db, total_amount, seller.fee_tier, order_type)
    vat_rate = settings.VAT_RATE
    # totals are VAT-inclusive
    vat_amount = fees.round_half_up(Decimal(total_amount) * vat_rate / (Decimal("1") + vat_rate))

    order = Order(
        order_number=new_order_number(),
        buyer_id=buyer.id,
        seller_id=seller.id,
        order_type=order_type,
        total_amount=total_amount,
        currency=(currency or settings.DEFAULT_CURRENCY).upper(),
        fee_percent=breakdown.fee_percent,
        platform_fee_amount=breakdown.fee_amount,
        vat_rate=vat_rate,
        vat_amount=vat_amount,
        status=OrderStatus.PENDING.value,
        escrow_status=EscrowStatus.PENDING.value,
        awaiting_approval=False,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info(
        "Order %s created: buyer=%s seller=%s total=%s fee=%s%%",
        order.order_number,
        buyer.id,
        seller.id,
        total_amount,
        breakdown.fee_percent,
    )
    audit.publish_order_event(db, order, "order.created", actor_id=buyer.id)
    return order


def _transition_values(order: Order, action: str, reason: str) -> tuple[dict, str, bool]:
    """Column values for a transition, its event type, and whether escrow is refunded."""
    now = utcnow()
    transition = get_transition(action)
    values = {Order.status: transition.target}

    if action == OrderAction.DECLINE.value:
        refund = escrow.refund_values(order)
        values.update(refund)
        values[Order.decline_reason] = reason
        return values, "order.declined", bool(refund)

    if action == OrderAction.CANCEL.value:
        refund = escrow.refund_values(order)
        values.update(refund)
        values[Order.cancellation_reason] = reason
        values[Order.awaiting_approval] = False
        return values, "order.cancelled", bool(refund)

    if action == OrderAction.COMPLETE.value:
        if requires_buyer_approval(order):
            escrow.ensure_held(order)
            values[Order.status] = order.status
            values[Order.awaiting_approval] = True
            values[Order.completion_submitted_at] = now
            return values, "order.completion_submitted", False
        values.update(escrow.release_values(order, now))
        values[Order.progress_percent] = 100
        return values, "order.completed", False

    if action == OrderAction.APPROVE_COMPLETION.value:
        values.update(escrow.release_values(order, now))
        values[Order.progress_percent] = 100
        return values, "order.completed", False

    if action == OrderAction.DISPUTE.value:
        values[Order.completed_at] = None
        values[Order.awaiting_approval] = False
        return values, "order.disputed", False

    event_types = {
        OrderAction.ACCEPT.value: "order.accepted",
        OrderAction.START.value: "order.started",
        OrderAction.RESUME_WORK.value: "order.resumed",
    }
    return values, event_types[action], False


def perform_order_action(
    db: Session,
    actor: User,
    order_id: int,
    action: str,
    reason: str | None = None,
    expected_status: str | None = None,
) -> Order:
    order, role = load_order_for_actor(db, actor, order_id)
    current_status = order.status
    awaiting_approval = bool(order.awaiting_approval)

    if expected_status is not None and expected_status != current_status:
        raise ConflictingTransition(
            f"Order is {current_status}, not {expected_status}; reload the order and retry"
        )

    open_dispute = has_open_dispute(db, order.id)
    if action not in available_actions(current_status, role, open_dispute, awaiting_approval):
        logger.info(
            "Rejected %s on order %s: status=%s role=%s open_dispute=%s",
            action,
            order.id,
            current_status,
            role,
            open_dispute,
        )
        raise InvalidTransition(f"Cannot {action} an order that is {current_status}")

    transition = get_transition(action)
    reason = (reason or "").strip()
    if transition.requires_reason and not reason:
        raise ValidationError(f"A reason is required to {action} an order")

    try:
        values, event_type, refunded = _transition_values(order, action, reason)
        compare_and_set_status(
            db,
            order,
            current_status,
            values,
            expected_awaiting_approval=awaiting_approval if transition.awaiting_approval is not None else None,
        )
        if refunded:
            escrow.refund_buyer_wallet(
                db,
                order,
                order.total_amount,
                reason=f"Refund for order {order.order_number}",
            )
        if action == OrderAction.DISPUTE.value:
            db.add(Dispute(order_id=order.id, opened_by=actor.id, reason=reason))
        db.commit()
    except EngineError:
        db.rollback()
        raise
    except Exception:
        db.rollback()
        logger.exception("Unexpected failure applying %s to order %s", action, order_id)
        raise

    db.refresh(order)
    logger.info("Order %s: %s by %s (%s -> %s)", order.order_number, action, actor.id, current_status, order.status)
    details = {"action": action, "from": current_status, "to": order.status}
    if reason:
        details["reason"] = reason
    audit.publish_order_event(db, order, event_type, actor_id=actor.id, details=details)
    return order


def list_orders_for_user(db: Session, user: User, status: str | None = None) -> list[Order]:
    query = db.query(Order).filter(or_(Order.buyer_id == user.id, Order.seller_id == user.id))
    if status:
        query = query.filter(Order.status == status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def get_order_detail(db: Session, actor: User, order_id: int) -> OrderDetail:
    order, role = load_order_for_actor(db, actor, order_id)
    open_dispute = has_open_dispute(db, order.id)
    return OrderDetail(
        order=order,
        role=role,
        available_actions=available_actions(order.status, role, open_dispute, bool(order.awaiting_approval)),
        breakdown=escrow.settlement_breakdown(order),
        has_open_dispute=open_dispute,
    )


def _load_payable_order(db: Session, actor: User, order_id: int) -> Order:
    order, role = load_order_for_actor(db, actor, order_id)
    if role != OrderRole.BUYER.value:
        raise NotAuthorized("Only the buyer can pay for an order")
    if order.status in TERMINAL_FAILURE_STATUSES:
        raise InvalidTransition(f"Cannot pay for an order that is {order.status}")
    if order.escrow_status != EscrowStatus.PENDING.value:
        raise ValidationError("Order is already paid")
    return order


def create_order_payment_intent(db: Session, actor: User, order_id: int) -> payment_processor.ChargeResult:
    """Start a card payment; escrow is marked held when the processor confirms it."""
    order = _load_payable_order(db, actor, order_id)
    customer_id = payment_processor.get_or_create_customer(db, actor)
    charge = payment_processor.create_charge(
        amount=order.total_amount,
        currency=order.currency,
        customer_id=customer_id,
        metadata={"type": ORDER_PAYMENT_METADATA_TYPE, "order_id": str(order.id)},
        save_for_future_use=True,
    )
    order.stripe_payment_intent_id = charge.id
    db.commit()
    logger.info("Payment intent %s created for order %s", charge.id, order.order_number)
    return charge


def _refund_late_payment(db: Session, order: Order, payment_intent_id: str) -> None:
    """Send back a card payment confirmed after the order was declined or cancelled."""
    refund = payment_processor.refund_payment(
        payment_intent_id,
        idempotency_key=f"late_payment_refund:{payment_intent_id}",
    )
    refunded = compare_and_set_escrow(
        db,
        order,
        EscrowStatus.PENDING.value,
        {
            Order.escrow_status: EscrowStatus.REFUNDED.value,
            Order.payment_source: PaymentSource.CARD.value,
            Order.stripe_payment_intent_id: payment_intent_id,
        },
    )
    if not refunded:
        db.rollback()
        logger.warning("Order %s escrow changed while refunding late payment %s", order.id, payment_intent_id)
        return
    db.commit()
    logger.warning(
        "Payment %s arrived after order %s was %s, refunded as %s",
        payment_intent_id,
        order.order_number,
        order.status,
        refund.id,
    )
    audit.publish_order_event(
        db,
        order,
        "order.payment_refunded",
        details={"payment_intent_id": payment_intent_id, "refund_id": refund.id, "order_status": order.status},
    )


def mark_order_paid(
    db: Session,
    order_id: int,
    payment_intent_id: str,
    amount: int | None = None,
    currency: str | None = None,
) -> bool:
    """Move escrow pending -> held for a confirmed card payment. Returns False when nothing changed.

    A payment for a declined or cancelled order is refunded instead, since no
    action could ever release it.
    """
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        logger.warning("Payment %s references unknown order %s", payment_intent_id, order_id)
        return False
    if order.escrow_status != EscrowStatus.PENDING.value:
        logger.info("Order %s already funded (escrow=%s), skipping", order.id, order.escrow_status)
        return False
    if order.status in TERMINAL_FAILURE_STATUSES:
        _refund_late_payment(db, order, payment_intent_id)
        return False
    if amount is not None and amount != order.total_amount:
        logger.warning(
            "Payment %s amount %s does not match order %s total %s",
            payment_intent_id,
            amount,
            order.id,
            order.total_amount,
        )
        return False
    if currency is not None and currency.upper() != order.currency.upper():
        logger.warning("Payment %s currency %s does not match order %s", payment_intent_id, currency, order.id)
        return False

    funded = compare_and_set_escrow(
        db,
        order,
        EscrowStatus.PENDING.value,
        {
            Order.escrow_status: EscrowStatus.HELD.value,
            Order.payment_source: PaymentSource.CARD.value,
            Order.stripe_payment_intent_id: payment_intent_id,
        },
        excluded_statuses=TERMINAL_FAILURE_STATUSES,
    )
    if not funded:
        db.rollback()
        db.refresh(order)
        if order.escrow_status == EscrowStatus.PENDING.value and order.status in TERMINAL_FAILURE_STATUSES:
            _refund_late_payment(db, order, payment_intent_id)
        return False
    db.commit()
    audit.publish_order_event(db, order, "order.payment_received", details={"payment_intent_id": payment_intent_id})
    return True


def pay_order_from_balance(db: Session, actor: User, order_id: int) -> Order:
    """Fund an order's escrow from the buyer's wallet in one transaction."""
    order = _load_payable_order(db, actor, order_id)
    try:
        escrow.spend_from_wallet(db, order)
        funded = compare_and_set_escrow(
            db,
            order,
            EscrowStatus.PENDING.value,
            {
                Order.escrow_status: EscrowStatus.HELD.value,
                Order.payment_source: PaymentSource.BALANCE.value,
            },
        )
        if not funded:
            raise ConflictingTransition("Order payment changed, reload the order and retry")
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Order %s paid from balance by %s", order.order_number, actor.id)
    audit.publish_order_event(db, order, "order.payment_received", actor_id=actor.id, details={"source": "balance"})
    return order
