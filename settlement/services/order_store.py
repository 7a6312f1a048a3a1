import secrets

from sqlalchemy.orm import Session

from settlement.errors import ConflictingTransition, NotAuthorized, NotFound
from settlement.models import Dispute, Order, User
from settlement.models.order import DisputeStatus
from settlement.services.order_machine import OrderRole
from settlement.services.timeutils import utcnow


def new_order_number() -> str:
    return f"ORD-{secrets.token_hex(5).upper()}"


def load_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        raise NotFound("Order not found")
    return order


def order_role_for(order: Order, user: User) -> str | None:
    if user.id == order.buyer_id:
        return OrderRole.BUYER.value
    if user.id == order.seller_id:
        return OrderRole.SELLER.value
    if user.is_mediator:
        return OrderRole.MEDIATOR.value
    return None


def load_order_for_actor(db: Session, actor: User, order_id: int) -> tuple[Order, str]:
    order = load_order(db, order_id)
    role = order_role_for(order, actor)
    if role is None:
        raise NotAuthorized("Not a participant of this order")
    return order, role


def get_open_dispute(db: Session, order_id: int) -> Dispute | None:
    return (
        db.query(Dispute)
        .filter(Dispute.order_id == order_id, Dispute.status == DisputeStatus.OPEN.value)
        .order_by(Dispute.id.desc())
        .first()
    )


def has_open_dispute(db: Session, order_id: int) -> bool:
    return get_open_dispute(db, order_id) is not None


def compare_and_set_status(
    db: Session,
    order: Order,
    expected_status: str,
    values: dict,
    expected_awaiting_approval: bool | None = None,
) -> None:
    """Write ``values`` only if the order is still in ``expected_status``.

    Raises ConflictingTransition when another actor changed the status first.
    """
    values = {**values, Order.updated_at: utcnow()}
    query = db.query(Order).filter(Order.id == order.id, Order.status == expected_status)
    if expected_awaiting_approval is not None:
        query = query.filter(Order.awaiting_approval == expected_awaiting_approval)
    updated = query.update(values, synchronize_session=False)
    if updated != 1:
        db.rollback()
        raise ConflictingTransition("Order status changed, reload the order and retry")
    db.flush()
    db.refresh(order)


def compare_and_set_escrow(
    db: Session,
    order: Order,
    expected_escrow: str,
    values: dict,
    excluded_statuses: frozenset | None = None,
) -> bool:
    """Escrow-only update guarded by the expected escrow status. Returns False on a lost race.

    With ``excluded_statuses`` the update also loses when the order has meanwhile
    moved into one of those statuses.
    """
    values = {**values, Order.updated_at: utcnow()}
    query = db.query(Order).filter(Order.id == order.id, Order.escrow_status == expected_escrow)
    if excluded_statuses:
        query = query.filter(Order.status.notin_(sorted(excluded_statuses)))
    updated = query.update(values, synchronize_session=False)
    if updated != 1:
        return False
    db.flush()
    db.refresh(order)
    return True
