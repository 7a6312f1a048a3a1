import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement.models import Order, OrderEvent

logger = logging.getLogger(__name__)


def publish_order_event(
    db: Session,
    order: Order,
    event_type: str,
    actor_id: int | None = None,
    details: dict | None = None,
) -> None:
    """Record an order event after the owning transaction has committed.

    Best effort: a failure here is logged and swallowed so that it can never
    undo or block the transition that produced the event.
    """
    logger.info(
        "Order event %s for order %s (actor=%s): %s",
        event_type,
        order.order_number,
        actor_id,
        details or {},
    )
    try:
        db.add(
            OrderEvent(
                order_id=order.id,
                event_type=event_type,
                actor_id=actor_id,
                details=details or {},
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to store %s event for order %s", event_type, order.id)


def list_order_events(db: Session, order: Order) -> list[OrderEvent]:
    return (
        db.query(OrderEvent)
        .filter(OrderEvent.order_id == order.id)
        .order_by(OrderEvent.created_at.asc(), OrderEvent.id.asc())
        .all()
    )
