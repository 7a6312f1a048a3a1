from unittest.mock import patch

import pytest
import stripe
from sqlalchemy import update

from settlement.errors import (
    AlreadyResolved,
    ConflictingTransition,
    ExternalProcessorError,
    NotFound,
    NotRetryable,
    ProcessorUnavailable,
)
from settlement.models import FailedPayment, Order
from settlement.services import retries


def _charge(status="succeeded", intent_id="pi_retry"):
    return {"id": intent_id, "status": status, "amount": 10000, "currency": "gbp", "metadata": {}}


@pytest.fixture
def failed_payment(db, buyer, make_order):
    order = make_order()
    return retries.record_failed_payment(
        db,
        payment_intent_id="pi_failed",
        user_id=buyer.id,
        amount=order.total_amount,
        currency="gbp",
        order_id=order.id,
        failure_code="card_declined",
        failure_message="Your card was declined.",
    )


def test_record_is_idempotent(db, buyer, failed_payment):
    again = retries.record_failed_payment(db, "pi_failed", buyer.id, 10000, "GBP")

    assert again.id == failed_payment.id
    assert db.query(FailedPayment).count() == 1
    assert failed_payment.max_retries == 3
    assert failed_payment.status == "pending"
    assert failed_payment.currency == "GBP"


def test_list_only_open_failures(db, buyer, seller, failed_payment):
    retries.record_failed_payment(db, "pi_other", seller.id, 500, "GBP")
    closed = retries.record_failed_payment(db, "pi_closed", buyer.id, 500, "GBP")
    retries.cancel_failed_payment(db, buyer, closed.id)

    assert [f.id for f in retries.list_failed_payments(db, buyer)] == [failed_payment.id]


def test_successful_retry_funds_order(db, buyer, failed_payment):
    with patch("stripe.PaymentIntent.create", return_value=_charge()) as create:
        result = retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")

    assert result.success is True
    kwargs = create.call_args.kwargs
    assert kwargs["payment_method"] == "pm_card"
    assert kwargs["confirm"] is True
    assert kwargs["off_session"] is True
    assert kwargs["metadata"]["retry_of"] == "pi_failed"
    assert kwargs["idempotency_key"] == f"failed_payment:{failed_payment.id}:attempt:1:pm_card"

    db.refresh(failed_payment)
    assert failed_payment.status == "succeeded"
    assert failed_payment.resolved_at is not None
    order = db.get(Order, failed_payment.order_id)
    assert order.escrow_status == "held"
    assert order.payment_source == "card"
    assert order.stripe_payment_intent_id == "pi_retry"


def test_declined_retry_counts_attempt(db, buyer, failed_payment):
    declined = stripe.CardError("Your card was declined.", None, "card_declined")
    with patch("stripe.PaymentIntent.create", side_effect=declined):
        result = retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")

    assert result.success is False
    assert "declined" in result.error
    db.refresh(failed_payment)
    assert failed_payment.retry_count == 1
    assert failed_payment.status == "retrying"
    assert failed_payment.last_retry_at is not None


def test_retries_exhaust_after_max_attempts(db, buyer, failed_payment):
    declined = stripe.CardError("Your card was declined.", None, "card_declined")
    with patch("stripe.PaymentIntent.create", side_effect=declined):
        for _ in range(3):
            retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")

        db.refresh(failed_payment)
        assert failed_payment.status == "exhausted"
        assert failed_payment.retry_count == 3
        assert failed_payment.resolved_at is not None

        with pytest.raises(NotRetryable):
            retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")


def test_processor_outage_is_not_an_attempt(db, buyer, failed_payment):
    with patch("stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("Network down")) as create:
        with pytest.raises(ProcessorUnavailable):
            retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")
    timed_out_key = create.call_args.kwargs["idempotency_key"]

    db.refresh(failed_payment)
    assert failed_payment.retry_count == 0
    assert failed_payment.status == "pending"
    assert failed_payment.last_retry_at is None

    with patch("stripe.PaymentIntent.create", return_value=_charge()) as create:
        assert retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card").success is True
    assert create.call_args.kwargs["idempotency_key"] == timed_out_key


def test_processor_error_is_not_an_attempt(db, buyer, failed_payment):
    with patch("stripe.PaymentIntent.create", side_effect=stripe.APIError("boom")):
        with pytest.raises(ExternalProcessorError):
            retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")

    db.refresh(failed_payment)
    assert failed_payment.retry_count == 0
    assert failed_payment.status == "pending"


def test_unconfirmed_charge_counts_as_decline(db, buyer, failed_payment):
    with patch("stripe.PaymentIntent.create", return_value=_charge(status="requires_action")):
        result = retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")

    assert result.success is False
    db.refresh(failed_payment)
    assert failed_payment.retry_count == 1


def test_succeeded_payment_is_already_resolved(db, buyer, failed_payment):
    with patch("stripe.PaymentIntent.create", return_value=_charge()):
        retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")

        with pytest.raises(AlreadyResolved):
            retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")


def test_cancelled_order_is_not_retryable(db, buyer, failed_payment, advance):
    order = db.get(Order, failed_payment.order_id)
    advance(order, (buyer, "cancel"))

    with patch("stripe.PaymentIntent.create") as create:
        with pytest.raises(NotRetryable):
            retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")
    create.assert_not_called()


def test_cancel_then_retry(db, buyer, failed_payment):
    cancelled = retries.cancel_failed_payment(db, buyer, failed_payment.id)
    assert cancelled.status == "cancelled"
    assert cancelled.resolved_at is not None

    with pytest.raises(NotRetryable):
        retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")


def test_other_users_failure_is_not_found(db, seller, failed_payment):
    with pytest.raises(NotFound):
        retries.retry_failed_payment(db, seller, failed_payment.id, "pm_card")
    with pytest.raises(NotFound):
        retries.cancel_failed_payment(db, seller, failed_payment.id)


def test_retry_for_paid_order_does_not_charge(db, buyer, failed_payment):
    order = db.get(Order, failed_payment.order_id)
    order.escrow_status = "held"
    order.stripe_payment_intent_id = "pi_new_card"
    db.commit()

    with patch("stripe.PaymentIntent.create") as create:
        with pytest.raises(AlreadyResolved, match="already paid"):
            retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")

    create.assert_not_called()
    db.refresh(failed_payment)
    assert failed_payment.status == "succeeded"
    assert failed_payment.retry_count == 0
    assert retries.list_failed_payments(db, buyer) == []


def test_order_paid_during_retry_refunds_the_charge(db, buyer, failed_payment):
    def paid_elsewhere(**kwargs):
        db.execute(
            update(Order)
            .where(Order.id == failed_payment.order_id)
            .values(escrow_status="held", stripe_payment_intent_id="pi_new_card")
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return _charge()

    with patch("stripe.PaymentIntent.create", side_effect=paid_elsewhere), patch(
        "stripe.Refund.create", return_value={"id": "re_retry", "status": "succeeded"}
    ) as refund:
        with pytest.raises(AlreadyResolved, match="refunded"):
            retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")

    refund.assert_called_once_with(payment_intent="pi_retry", idempotency_key="retry_refund:pi_retry")
    order = db.get(Order, failed_payment.order_id)
    db.refresh(order)
    assert order.stripe_payment_intent_id == "pi_new_card"
    db.refresh(failed_payment)
    assert failed_payment.status == "succeeded"


def test_concurrent_retry_loses_the_claim(db, buyer, failed_payment):
    def claimed_elsewhere(failed):
        db.execute(
            update(FailedPayment)
            .where(FailedPayment.id == failed.id)
            .values(status="retrying", retry_count=FailedPayment.retry_count + 1)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    with patch("settlement.services.retries._ensure_retryable", side_effect=claimed_elsewhere), patch(
        "stripe.PaymentIntent.create"
    ) as create:
        with pytest.raises(ConflictingTransition):
            retries.retry_failed_payment(db, buyer, failed_payment.id, "pm_card")

    create.assert_not_called()
    db.refresh(failed_payment)
    assert failed_payment.retry_count == 1
