import logging

from sqlalchemy.orm import Session

from settlement.errors import AlreadyResolved, EngineError, InvalidTransition, NotAuthorized, NotFound, ValidationError
from settlement.models import Dispute, Order, User
from settlement.models.order import DisputeOutcome, DisputeStatus, EscrowStatus, OrderStatus
from settlement.services import audit, escrow
from settlement.services.order_store import compare_and_set_status, get_open_dispute, load_order
from settlement.services.timeutils import utcnow

logger = logging.getLogger(__name__)


def _outcome_values(order: Order, outcome: str, refund_amount: int | None) -> tuple[dict, int]:
    """Order column values for an outcome and the amount owed back to the buyer."""
    now = utcnow()

    if outcome == DisputeOutcome.RELEASE.value:
        values = {Order.status: OrderStatus.COMPLETED.value, Order.progress_percent: 100}
        if order.escrow_status == EscrowStatus.RELEASED.value:
            # disputed after completion; funds never left the released state
            values[Order.completed_at] = now
        else:
            values.update(escrow.release_values(order, now))
        return values, 0

    if outcome == DisputeOutcome.REFUND.value:
        values = {Order.status: OrderStatus.CANCELLED.value, Order.cancellation_reason: "Refunded after dispute"}
        refund = escrow.refund_values(order)
        values.update(refund)
        return values, order.total_amount if refund else 0

    if outcome == DisputeOutcome.SPLIT.value:
        if refund_amount is None or not 0 < refund_amount < order.total_amount:
            raise ValidationError("Split refund must be between 0 and the order total")
        values = {Order.status: OrderStatus.COMPLETED.value, Order.progress_percent: 100}
        values.update(escrow.partial_release_values(order, now))
        return values, refund_amount

    raise ValidationError(f"Unknown dispute outcome: {outcome}")


def resolve_dispute(
    db: Session,
    actor: User,
    order_id: int,
    outcome: str,
    refund_amount: int | None = None,
    notes: str | None = None,
) -> Dispute:
    """Close the open dispute on an order and apply its outcome. Mediators and admins only."""
    if not actor.is_mediator:
        raise NotAuthorized("Only a mediator can resolve disputes")

    order = load_order(db, order_id)
    dispute = get_open_dispute(db, order.id)
    if dispute is None:
        raise NotFound("No open dispute for this order")
    if order.status != OrderStatus.DISPUTED.value:
        raise InvalidTransition(f"Cannot resolve a dispute on an order that is {order.status}")
    if outcome not in {o.value for o in DisputeOutcome}:
        raise ValidationError(f"Unknown dispute outcome: {outcome}")

    try:
        owed_to_buyer = 0
        if outcome == DisputeOutcome.RESUME.value:
            if order.escrow_status in {EscrowStatus.RELEASED.value, EscrowStatus.PARTIAL_RELEASE.value}:
                raise ValidationError("Payment was already released; resolve with release, refund or split")
        else:
            values, owed_to_buyer = _outcome_values(order, outcome, refund_amount)
            compare_and_set_status(db, order, OrderStatus.DISPUTED.value, values)

        closed = (
            db.query(Dispute)
            .filter(Dispute.id == dispute.id, Dispute.status == DisputeStatus.OPEN.value)
            .update(
                {
                    Dispute.status: DisputeStatus.RESOLVED.value,
                    Dispute.outcome: outcome,
                    Dispute.refund_amount: refund_amount if outcome == DisputeOutcome.SPLIT.value else None,
                    Dispute.resolution_notes: notes,
                    Dispute.resolved_by: actor.id,
                    Dispute.resolved_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        if closed != 1:
            raise AlreadyResolved("Dispute was already resolved")

        if owed_to_buyer:
            escrow.refund_buyer_wallet(
                db,
                order,
                owed_to_buyer,
                reason=f"Dispute refund for order {order.order_number}",
            )
        db.commit()
    except EngineError:
        db.rollback()
        raise

    db.refresh(dispute)
    db.refresh(order)
    logger.info(
        "Dispute %s on order %s resolved by %s: %s",
        dispute.id,
        order.order_number,
        actor.id,
        outcome,
    )
    details = {"dispute_id": dispute.id, "outcome": outcome}
    if outcome == DisputeOutcome.SPLIT.value:
        details["refund_amount"] = refund_amount
    audit.publish_order_event(db, order, "order.dispute_resolved", actor_id=actor.id, details=details)
    return dispute
