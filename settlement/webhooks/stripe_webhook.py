import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from settlement.config import settings
from settlement.models import Order, get_db
from settlement.services import ledger, orders, payouts, retries

router = APIRouter()
logger = logging.getLogger(__name__)


def _metadata_int(metadata: dict, key: str) -> int | None:
    raw = metadata.get(key)
    if not raw:
        return None
    try:
        value = int(raw)
    except (ValueError, TypeError):
        logger.warning("Invalid %s in payment metadata: %s", key, raw)
        return None
    return value if value > 0 else None


def _intent_amount(intent: dict) -> int | None:
    amount = intent.get("amount_received") or intent.get("amount")
    try:
        return int(amount) if amount is not None else None
    except (TypeError, ValueError):
        return None


def _handle_payment_succeeded(db: Session, intent: dict) -> None:
    metadata = intent.get("metadata") or {}
    payment_type = metadata.get("type")

    if payment_type == orders.ORDER_PAYMENT_METADATA_TYPE:
        order_id = _metadata_int(metadata, "order_id")
        if order_id is None:
            logger.warning("No order_id in payment %s metadata", intent.get("id"))
            return
        orders.mark_order_paid(
            db,
            order_id=order_id,
            payment_intent_id=intent["id"],
            amount=_intent_amount(intent),
            currency=intent.get("currency"),
        )
        return

    if payment_type == ledger.TOP_UP_METADATA_TYPE:
        user_id = _metadata_int(metadata, "user_id")
        amount = _intent_amount(intent)
        if user_id is None or amount is None:
            logger.warning("Top-up %s is missing user or amount", intent.get("id"))
            return
        ledger.credit_top_up(db, intent["id"], user_id, amount)
        return

    logger.info("Ignoring succeeded payment %s of type %s", intent.get("id"), payment_type)


def _handle_payment_failed(db: Session, intent: dict) -> None:
    metadata = intent.get("metadata") or {}
    if metadata.get("type") != orders.ORDER_PAYMENT_METADATA_TYPE:
        logger.info("Ignoring failed payment %s of type %s", intent.get("id"), metadata.get("type"))
        return

    order_id = _metadata_int(metadata, "order_id")
    order = db.query(Order).filter(Order.id == order_id).first() if order_id else None
    if order is None:
        logger.warning("Failed payment %s references unknown order %s", intent.get("id"), order_id)
        return

    error = intent.get("last_payment_error") or {}
    retries.record_failed_payment(
        db,
        payment_intent_id=intent["id"],
        user_id=order.buyer_id,
        amount=int(intent.get("amount") or order.total_amount),
        currency=intent.get("currency") or order.currency,
        order_id=order.id,
        failure_code=error.get("decline_code") or error.get("code"),
        failure_message=error.get("message"),
    )


def _handle_payout(db: Session, payout: dict, status: str) -> None:
    payouts.apply_payout_notification(
        db,
        stripe_payout_id=payout["id"],
        status=status,
        failure_reason=payout.get("failure_message"),
        payout_request_id=_metadata_int(payout.get("metadata") or {}, "payout_request_id"),
    )


@router.post(
    "/stripe",
    summary="Stripe webhook",
)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Stripe sends events here. Handled: payment_intent.succeeded (order payment
    or balance top-up), payment_intent.payment_failed (order payment),
    payout.paid and payout.failed. Every handler is safe to run twice for the
    same event.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set, skipping webhook verification")
        return {"received": True}

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        logger.error("Invalid payload: %s", e)
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError as e:
        logger.error("Invalid signature: %s", e)
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event["type"]
    obj = event["data"]["object"]
    try:
        if event_type == "payment_intent.succeeded":
            _handle_payment_succeeded(db, obj)
        elif event_type == "payment_intent.payment_failed":
            _handle_payment_failed(db, obj)
        elif event_type == "payout.paid":
            _handle_payout(db, obj, "paid")
        elif event_type == "payout.failed":
            _handle_payout(db, obj, "failed")
        else:
            logger.info("Unhandled Stripe event type %s", event_type)
    except Exception as e:
        logger.error("Error processing Stripe event %s: %s", event.get("id"), e, exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal server error")

    return {"received": True}
