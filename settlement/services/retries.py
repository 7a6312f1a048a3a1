"""
Failed-payment retry tracker.

A failure record is created when the processor reports a failed order payment.
The payer may retry it with another card until ``max_retries`` declines have
been recorded. A processor outage during a retry is not counted as an attempt.
Each retry claims its attempt number with a conditional update before the
charge, so two retries that read the same row cannot both charge the payer.
"""
import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.config import settings
from settlement.errors import (
    AlreadyResolved,
    ChargeDeclined,
    ConflictingTransition,
    ExternalProcessorError,
    NotFound,
    NotRetryable,
)
from settlement.models import FailedPayment, Order, User
from settlement.models.failed_payment import (
    OPEN_FAILED_PAYMENT_STATUSES,
    TERMINAL_FAILED_PAYMENT_STATUSES,
    FailedPaymentStatus,
)
from settlement.models.order import EscrowStatus, PaymentSource
from settlement.services import audit, payment_processor
from settlement.services.order_machine import TERMINAL_FAILURE_STATUSES
from settlement.services.order_store import compare_and_set_escrow
from settlement.services.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryResult:
    success: bool
    error: str | None = None


def record_failed_payment(
    db: Session,
    payment_intent_id: str,
    user_id: int,
    amount: int,
    currency: str,
    order_id: int | None = None,
    failure_code: str | None = None,
    failure_message: str | None = None,
) -> FailedPayment:
    """Record a failed intent once. Repeated deliveries return the existing row."""
    existing = (
        db.query(FailedPayment)
        .filter(FailedPayment.stripe_payment_intent_id == payment_intent_id)
        .first()
    )
    if existing is not None:
        return existing

    failed = FailedPayment(
        order_id=order_id,
        user_id=user_id,
        stripe_payment_intent_id=payment_intent_id,
        amount=amount,
        currency=currency.upper(),
        failure_code=failure_code,
        failure_message=failure_message,
        retry_count=0,
        max_retries=settings.FAILED_PAYMENT_MAX_RETRIES,
        status=FailedPaymentStatus.PENDING.value,
    )
    db.add(failed)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return (
            db.query(FailedPayment)
            .filter(FailedPayment.stripe_payment_intent_id == payment_intent_id)
            .one()
        )
    db.refresh(failed)
    logger.info(
        "Recorded failed payment %s for user %s (order=%s, code=%s)",
        payment_intent_id,
        user_id,
        order_id,
        failure_code,
    )
    return failed


def list_failed_payments(db: Session, user: User) -> list[FailedPayment]:
    return (
        db.query(FailedPayment)
        .filter(
            FailedPayment.user_id == user.id,
            FailedPayment.status.in_(OPEN_FAILED_PAYMENT_STATUSES),
        )
        .order_by(FailedPayment.created_at.desc(), FailedPayment.id.desc())
        .all()
    )


def _load_owned(db: Session, user: User, failed_payment_id: int) -> FailedPayment:
    failed = (
        db.query(FailedPayment)
        .filter(FailedPayment.id == failed_payment_id, FailedPayment.user_id == user.id)
        .first()
    )
    if failed is None:
        raise NotFound("Failed payment not found")
    return failed


def _ensure_retryable(failed: FailedPayment) -> None:
    if failed.status == FailedPaymentStatus.SUCCEEDED.value:
        raise AlreadyResolved("This payment has already succeeded")
    if failed.status in TERMINAL_FAILED_PAYMENT_STATUSES:
        raise NotRetryable("This payment cannot be retried")


def _resolve_as_paid(db: Session, failed: FailedPayment) -> None:
    failed.status = FailedPaymentStatus.SUCCEEDED.value
    failed.resolved_at = utcnow()
    db.commit()


def _claim_attempt(db: Session, failed_payment_id: int, expected_count: int) -> int:
    """Reserve the next attempt number. A retry that read the same row state loses."""
    claimed = (
        db.query(FailedPayment)
        .filter(
            FailedPayment.id == failed_payment_id,
            FailedPayment.status.in_(OPEN_FAILED_PAYMENT_STATUSES),
            FailedPayment.retry_count == expected_count,
        )
        .update(
            {
                FailedPayment.status: FailedPaymentStatus.RETRYING.value,
                FailedPayment.retry_count: FailedPayment.retry_count + 1,
                FailedPayment.last_retry_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    if claimed != 1:
        db.rollback()
        raise ConflictingTransition("Payment retry already in progress, reload and retry")
    db.commit()
    return expected_count + 1


def _release_attempt(db: Session, failed_payment_id: int, attempt: int, status: str, last_retry_at) -> None:
    """Give back an attempt whose charge failed for a reason other than a decline."""
    db.query(FailedPayment).filter(
        FailedPayment.id == failed_payment_id,
        FailedPayment.retry_count == attempt,
    ).update(
        {
            FailedPayment.status: status,
            FailedPayment.retry_count: FailedPayment.retry_count - 1,
            FailedPayment.last_retry_at: last_retry_at,
        },
        synchronize_session=False,
    )
    db.commit()


def _record_decline(db: Session, failed: FailedPayment, attempt: int, code: str | None, message: str) -> None:
    failed.failure_code = code
    failed.failure_message = message
    if attempt >= failed.max_retries:
        failed.status = FailedPaymentStatus.EXHAUSTED.value
        failed.resolved_at = utcnow()
    db.commit()
    logger.info(
        "Retry of failed payment %s declined (%s/%s): %s",
        failed.id,
        attempt,
        failed.max_retries,
        message,
    )


def retry_failed_payment(
    db: Session,
    user: User,
    failed_payment_id: int,
    payment_method_id: str,
) -> RetryResult:
    failed = _load_owned(db, user, failed_payment_id)
    expected_count = failed.retry_count
    previous_status = failed.status
    previous_retry_at = failed.last_retry_at
    _ensure_retryable(failed)

    order = None
    if failed.order_id is not None:
        order = db.query(Order).filter(Order.id == failed.order_id).first()
        if order is not None and order.status in TERMINAL_FAILURE_STATUSES:
            raise NotRetryable(f"Order is {order.status}")
        if order is not None and order.escrow_status != EscrowStatus.PENDING.value:
            _resolve_as_paid(db, failed)
            logger.info("Failed payment %s closed, order %s is already paid", failed.id, order.id)
            raise AlreadyResolved("Order is already paid")

    customer_id = payment_processor.get_or_create_customer(db, user)
    attempt = _claim_attempt(db, failed.id, expected_count)
    try:
        charge = payment_processor.create_charge(
            amount=failed.amount,
            currency=failed.currency,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            metadata={
                "failed_payment_id": str(failed.id),
                "order_id": str(failed.order_id or ""),
                "retry_of": failed.stripe_payment_intent_id or "",
            },
            confirm=True,
            idempotency_key=f"failed_payment:{failed.id}:attempt:{attempt}:{payment_method_id}",
        )
    except ChargeDeclined as exc:
        _record_decline(db, failed, attempt, exc.decline_code, exc.message)
        return RetryResult(success=False, error=exc.message)
    except ExternalProcessorError:
        _release_attempt(db, failed.id, attempt, previous_status, previous_retry_at)
        raise

    if charge.status != "succeeded":
        message = f"Payment {charge.status}"
        _record_decline(db, failed, attempt, charge.status, message)
        return RetryResult(success=False, error=message)

    if order is not None:
        funded = compare_and_set_escrow(
            db,
            order,
            EscrowStatus.PENDING.value,
            {
                Order.escrow_status: EscrowStatus.HELD.value,
                Order.payment_source: PaymentSource.CARD.value,
                Order.stripe_payment_intent_id: charge.id,
            },
        )
        if not funded:
            db.rollback()
            try:
                refund = payment_processor.refund_payment(charge.id, idempotency_key=f"retry_refund:{charge.id}")
            except ExternalProcessorError as exc:
                logger.error("Retry charge %s for paid order %s was not refunded: %s", charge.id, order.id, exc.message)
                raise
            _resolve_as_paid(db, failed)
            logger.warning(
                "Order %s was paid while retry %s was charging, refunded as %s",
                order.id,
                charge.id,
                refund.id,
            )
            raise AlreadyResolved("Order is already paid, the retry charge was refunded")

    failed.status = FailedPaymentStatus.SUCCEEDED.value
    failed.resolved_at = utcnow()
    db.commit()
    logger.info("Failed payment %s recovered by %s", failed.id, charge.id)
    if order is not None:
        audit.publish_order_event(
            db,
            order,
            "order.payment_received",
            actor_id=user.id,
            details={"payment_intent_id": charge.id, "retry_of": failed.stripe_payment_intent_id},
        )
    return RetryResult(success=True)


def cancel_failed_payment(db: Session, user: User, failed_payment_id: int) -> FailedPayment:
    failed = _load_owned(db, user, failed_payment_id)
    _ensure_retryable(failed)
    failed.status = FailedPaymentStatus.CANCELLED.value
    failed.resolved_at = utcnow()
    db.commit()
    db.refresh(failed)
    logger.info("Failed payment %s cancelled by %s", failed.id, user.id)
    return failed
