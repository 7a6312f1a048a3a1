from typing import Annotated

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from settlement.dependencies import get_current_user
from settlement.models import User, get_db
from settlement.schemas.orders import (
    AvailableActionsResponse,
    DisputeResolveRequest,
    DisputeResponse,
    OrderActionRequest,
    OrderCreateRequest,
    OrderDetailResponse,
    OrderEventResponse,
    OrderResponse,
    PaymentIntentResponse,
    SettlementBreakdownResponse,
)
from settlement.services import audit, disputes, orders
from settlement.services.order_machine import OrderAction

router = APIRouter()


@router.post(
    "",
    response_model=OrderResponse,
    status_code=201,
    summary="Create an order",
)
def create_order(
    body: OrderCreateRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    """
    Place a pending order with a seller. The platform fee is resolved from the
    seller's fee tier and the order type and stored with the order.
    """
    order = orders.create_order(
        db,
        buyer=current_user,
        seller_id=body.seller_id,
        order_type=body.order_type.value,
        total_amount=body.total_amount,
        currency=body.currency,
    )
    return order


@router.get(
    "/me",
    response_model=list[OrderResponse],
    summary="List my orders",
)
def my_orders(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    status: Annotated[str | None, Query()] = None,
):
    """Orders where the current user is the buyer or the seller, newest first."""
    return orders.list_orders_for_user(db, current_user, status=status)


@router.get(
    "/{order_id}",
    response_model=OrderDetailResponse,
    summary="Get order with available actions",
)
def order_detail(
    order_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    detail = orders.get_order_detail(db, current_user, order_id)
    return OrderDetailResponse(
        order=OrderResponse.model_validate(detail.order),
        role=detail.role,
        available_actions=detail.available_actions,
        has_open_dispute=detail.has_open_dispute,
        breakdown=SettlementBreakdownResponse(
            gross_amount=detail.breakdown.gross_amount,
            fee_percent=detail.breakdown.fee_percent,
            fee_amount=detail.breakdown.fee_amount,
            net_amount=detail.breakdown.net_amount,
        ),
    )


@router.get(
    "/{order_id}/actions",
    response_model=AvailableActionsResponse,
    summary="Actions the current user may take",
)
def order_actions(
    order_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    detail = orders.get_order_detail(db, current_user, order_id)
    return AvailableActionsResponse(
        order_id=detail.order.id,
        status=detail.order.status,
        role=detail.role,
        available_actions=detail.available_actions,
    )


@router.get(
    "/{order_id}/events",
    response_model=list[OrderEventResponse],
    summary="Order event history",
)
def order_events(
    order_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    detail = orders.get_order_detail(db, current_user, order_id)
    return audit.list_order_events(db, detail.order)


@router.post(
    "/{order_id}/actions/{action}",
    response_model=OrderResponse,
    summary="Apply an action to an order",
)
def apply_action(
    order_id: int,
    action: OrderAction,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    body: Annotated[OrderActionRequest | None, Body()] = None,
):
    """
    Run one state machine transition. Pass ``expected_status`` to have the
    action rejected with 409 if someone else changed the order first.
    """
    body = body or OrderActionRequest()
    return orders.perform_order_action(
        db,
        actor=current_user,
        order_id=order_id,
        action=action.value,
        reason=body.reason,
        expected_status=body.expected_status,
    )


@router.post(
    "/{order_id}/dispute/resolve",
    response_model=DisputeResponse,
    summary="Resolve the open dispute (mediators only)",
)
def resolve_dispute(
    order_id: int,
    body: DisputeResolveRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return disputes.resolve_dispute(
        db,
        actor=current_user,
        order_id=order_id,
        outcome=body.outcome.value,
        refund_amount=body.refund_amount,
        notes=body.notes,
    )


@router.post(
    "/{order_id}/payment-intent",
    response_model=PaymentIntentResponse,
    summary="Start a card payment for an order",
)
def create_payment_intent(
    order_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    charge = orders.create_order_payment_intent(db, current_user, order_id)
    return PaymentIntentResponse(
        payment_intent_id=charge.id,
        client_secret=charge.client_secret,
        amount=charge.amount,
        currency=charge.currency,
    )


@router.post(
    "/{order_id}/pay-from-balance",
    response_model=OrderResponse,
    summary="Pay for an order from the account balance",
)
def pay_from_balance(
    order_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return orders.pay_order_from_balance(db, current_user, order_id)
