import random
import re
from unittest.mock import patch

import pytest
from sqlalchemy import update

from settlement.errors import (
    ConflictingTransition,
    EngineError,
    InsufficientFunds,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from settlement.models import AccountBalance, BalanceTransaction, Dispute, Order
from settlement.services import audit, disputes, fees, ledger, orders
from settlement.services.order_store import compare_and_set_status


def _intent(intent_id="pi_order_1", amount=10000, metadata=None):
    return {
        "id": intent_id,
        "status": "requires_payment_method",
        "amount": amount,
        "currency": "gbp",
        "client_secret": f"{intent_id}_secret",
        "metadata": metadata or {},
    }


def _balance(db, user):
    row = db.query(AccountBalance).filter(AccountBalance.user_id == user.id).first()
    return row.balance_amount if row else 0


class TestCreateOrder:
    def test_snapshot_is_stored(self, db, buyer, seller):
        order = orders.create_order(db, buyer, seller.id, "booking", 10000)

        assert re.fullmatch(r"ORD-[0-9A-F]{10}", order.order_number)
        assert order.status == "pending"
        assert order.escrow_status == "pending"
        assert order.currency == "GBP"
        assert order.platform_fee_amount == 800
        assert order.vat_amount == 1667
        assert order.awaiting_approval is False
        assert [e.event_type for e in audit.list_order_events(db, order)] == ["order.created"]

    def test_fee_uses_seller_tier(self, db, buyer, seller):
        fees.seed_default_fee_policy(db)
        seller.fee_tier = "apprentice"
        db.commit()

        order = orders.create_order(db, buyer, seller.id, "booking", 10000)
        assert order.platform_fee_amount == 500

    @pytest.mark.parametrize(
        "order_type,total",
        [("auction", 1000), ("booking", 0), ("booking", -5)],
    )
    def test_rejects_invalid_input(self, db, buyer, seller, order_type, total):
        with pytest.raises(ValidationError):
            orders.create_order(db, buyer, seller.id, order_type, total)
        assert db.query(Order).count() == 0

    def test_rejects_order_with_self(self, db, buyer):
        with pytest.raises(ValidationError):
            orders.create_order(db, buyer, buyer.id, "booking", 1000)

    def test_unknown_seller(self, db, buyer):
        with pytest.raises(NotFound):
            orders.create_order(db, buyer, 4242, "booking", 1000)


class TestActions:
    def test_booking_happy_path(self, db, buyer, seller, make_order, advance):
        order = make_order(funded=True)
        advance(order, (seller, "accept"), (seller, "start"), (seller, "complete"))

        assert order.status == "completed"
        assert order.escrow_status == "released"
        assert order.completed_at is not None
        assert order.progress_percent == 100
        assert [e.event_type for e in audit.list_order_events(db, order)] == [
            "order.created",
            "order.accepted",
            "order.started",
            "order.completed",
        ]

    def test_event_details_record_the_transition(self, db, seller, make_order):
        order = make_order()
        orders.perform_order_action(db, seller, order.id, "decline", reason="Fully booked")

        event = audit.list_order_events(db, order)[-1]
        assert event.event_type == "order.declined"
        assert event.actor_id == seller.id
        assert event.details == {
            "action": "decline",
            "from": "pending",
            "to": "declined",
            "reason": "Fully booked",
        }

    def test_wrong_role_is_invalid_transition(self, db, buyer, make_order):
        order = make_order()
        with pytest.raises(InvalidTransition):
            orders.perform_order_action(db, buyer, order.id, "accept")
        db.refresh(order)
        assert order.status == "pending"

    def test_outsider_is_not_authorized(self, db, outsider, make_order):
        order = make_order()
        with pytest.raises(NotAuthorized):
            orders.perform_order_action(db, outsider, order.id, "cancel", reason="nope")

    def test_missing_order(self, db, seller):
        with pytest.raises(NotFound):
            orders.perform_order_action(db, seller, 999, "accept")

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_reason_required(self, db, seller, make_order, reason):
        order = make_order()
        with pytest.raises(ValidationError):
            orders.perform_order_action(db, seller, order.id, "decline", reason=reason)
        db.refresh(order)
        assert order.status == "pending"

    def test_complete_requires_funded_escrow(self, db, seller, make_order, advance):
        order = make_order(funded=False)
        advance(order, (seller, "accept"), (seller, "start"))

        with pytest.raises(ValidationError, match="escrow is not held"):
            orders.perform_order_action(db, seller, order.id, "complete")
        db.refresh(order)
        assert order.status == "in_progress"
        assert order.escrow_status == "pending"

    def test_service_needs_buyer_approval(self, db, buyer, seller, make_order, advance):
        order = make_order(order_type="service", funded=True)
        advance(order, (seller, "accept"), (seller, "start"), (seller, "complete"))

        assert order.status == "in_progress"
        assert order.awaiting_approval is True
        assert order.completion_submitted_at is not None
        assert order.escrow_status == "held"

        with pytest.raises(InvalidTransition):
            orders.perform_order_action(db, seller, order.id, "complete")

        orders.perform_order_action(db, buyer, order.id, "approve_completion")
        db.refresh(order)
        assert order.status == "completed"
        assert order.escrow_status == "released"
        assert order.awaiting_approval is False

    def test_completed_order_cannot_be_cancelled(self, db, buyer, seller, make_order, advance):
        order = make_order(funded=True)
        advance(order, (seller, "accept"), (seller, "start"), (seller, "complete"))

        with pytest.raises(InvalidTransition):
            orders.perform_order_action(db, buyer, order.id, "cancel", reason="changed my mind")


class TestRefunds:
    def test_cancel_refunds_held_card_escrow(self, db, buyer, seller, make_order, advance):
        order = make_order(funded=True)
        advance(order, (seller, "accept"), (buyer, "cancel"))

        assert order.status == "cancelled"
        assert order.escrow_status == "refunded"
        assert order.cancellation_reason == "test reason"

    def test_decline_before_payment_leaves_escrow_pending(self, db, seller, make_order, advance):
        order = make_order(funded=False)
        advance(order, (seller, "decline"))

        assert order.status == "declined"
        assert order.escrow_status == "pending"
        assert order.decline_reason == "test reason"

    def test_balance_paid_order_is_refunded_to_wallet(self, db, buyer, seller, make_order, advance):
        order = make_order(funded=True, source="balance")
        assert order.payment_source == "balance"
        assert _balance(db, buyer) == 0

        advance(order, (seller, "accept"), (seller, "cancel"))

        assert order.escrow_status == "refunded"
        assert _balance(db, buyer) == 10000
        refund = (
            db.query(BalanceTransaction)
            .filter(BalanceTransaction.idempotency_key == f"order:{order.id}:refund")
            .one()
        )
        assert refund.amount == 10000
        assert refund.transaction_type == "refund"


class TestDisputes:
    def test_dispute_opens_record_and_blocks_second(self, db, buyer, seller, make_order, advance):
        order = make_order(funded=True)
        advance(order, (seller, "accept"), (seller, "start"), (buyer, "dispute"))

        assert order.status == "disputed"
        dispute = db.query(Dispute).filter(Dispute.order_id == order.id).one()
        assert dispute.status == "open"
        assert dispute.opened_by == buyer.id
        assert dispute.reason == "test reason"

        with pytest.raises(InvalidTransition):
            orders.perform_order_action(db, seller, order.id, "dispute", reason="me too")
        assert db.query(Dispute).filter(Dispute.order_id == order.id).count() == 1

    def test_resume_blocked_while_dispute_open(self, db, buyer, seller, make_order, advance):
        order = make_order(funded=True)
        advance(order, (seller, "accept"), (seller, "start"), (buyer, "dispute"))

        with pytest.raises(InvalidTransition):
            orders.perform_order_action(db, seller, order.id, "resume_work")

    def test_dispute_after_completion_clears_completed_at(self, db, buyer, seller, make_order, advance):
        order = make_order(funded=True)
        advance(order, (seller, "accept"), (seller, "start"), (seller, "complete"))
        assert order.completed_at is not None

        advance(order, (buyer, "dispute"))
        assert order.status == "disputed"
        assert order.completed_at is None
        assert order.escrow_status == "released"


class TestConcurrency:
    def test_expected_status_mismatch_is_conflict(self, db, seller, make_order):
        order = make_order()
        with pytest.raises(ConflictingTransition):
            orders.perform_order_action(db, seller, order.id, "start", expected_status="accepted")

    def test_second_of_two_racing_accepts_loses(self, db, seller, make_order):
        order = make_order()
        orders.perform_order_action(db, seller, order.id, "accept", expected_status="pending")

        with pytest.raises(ConflictingTransition):
            orders.perform_order_action(db, seller, order.id, "accept", expected_status="pending")
        db.refresh(order)
        assert order.status == "accepted"

    def test_status_changed_between_read_and_write(self, db, seller, make_order):
        order = make_order()

        def concurrent_cancel(session, order_id):
            session.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(status="cancelled", cancellation_reason="buyer cancelled")
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return False

        with patch("settlement.services.orders.has_open_dispute", side_effect=concurrent_cancel):
            with pytest.raises(ConflictingTransition):
                orders.perform_order_action(db, seller, order.id, "accept")

        db.refresh(order)
        assert order.status == "cancelled"
        assert [e.event_type for e in audit.list_order_events(db, order)] == ["order.created"]

    def test_compare_and_set_with_stale_status(self, db, make_order):
        order = make_order()
        with pytest.raises(ConflictingTransition):
            compare_and_set_status(db, order, "accepted", {Order.status: "in_progress"})
        db.refresh(order)
        assert order.status == "pending"


class TestQueries:
    def test_detail_for_buyer(self, db, buyer, seller, make_order, advance):
        order = make_order(funded=True)
        advance(order, (seller, "accept"), (seller, "start"))

        detail = orders.get_order_detail(db, buyer, order.id)
        assert detail.role == "buyer"
        assert detail.available_actions == ["cancel", "dispute"]
        assert detail.breakdown.fee_amount == 800
        assert detail.breakdown.net_amount == 9200
        assert detail.has_open_dispute is False

    def test_mediator_sees_order_without_actions(self, db, mediator, make_order):
        order = make_order()
        detail = orders.get_order_detail(db, mediator, order.id)
        assert detail.role == "mediator"
        assert detail.available_actions == []

    def test_list_orders_for_each_party(self, db, buyer, seller, outsider, make_order, advance):
        first = make_order()
        second = make_order()
        advance(second, (seller, "accept"))

        assert {o.id for o in orders.list_orders_for_user(db, buyer)} == {first.id, second.id}
        assert [o.id for o in orders.list_orders_for_user(db, seller, status="accepted")] == [second.id]
        assert orders.list_orders_for_user(db, outsider) == []


class TestPayment:
    def test_payment_intent_for_order(self, db, buyer, make_order):
        order = make_order()
        with patch("stripe.PaymentIntent.create", return_value=_intent()) as create:
            charge = orders.create_order_payment_intent(db, buyer, order.id)

        assert charge.id == "pi_order_1"
        assert charge.client_secret == "pi_order_1_secret"
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 10000
        assert kwargs["currency"] == "gbp"
        assert kwargs["customer"] == "cus_buyer"
        assert kwargs["metadata"] == {"type": "order_payment", "order_id": str(order.id)}
        assert kwargs["setup_future_usage"] == "off_session"
        db.refresh(order)
        assert order.stripe_payment_intent_id == "pi_order_1"
        assert order.escrow_status == "pending"

    def test_only_buyer_can_pay(self, db, seller, make_order):
        order = make_order()
        with pytest.raises(NotAuthorized):
            orders.create_order_payment_intent(db, seller, order.id)

    def test_cannot_pay_twice(self, db, buyer, make_order):
        order = make_order(funded=True)
        with pytest.raises(ValidationError, match="already paid"):
            orders.create_order_payment_intent(db, buyer, order.id)

    def test_cannot_pay_cancelled_order(self, db, buyer, make_order, advance):
        order = make_order()
        advance(order, (buyer, "cancel"))
        with pytest.raises(InvalidTransition):
            orders.pay_order_from_balance(db, buyer, order.id)

    def test_mark_paid_checks_amount_and_currency(self, db, make_order):
        order = make_order()
        assert orders.mark_order_paid(db, order.id, "pi_x", amount=9999) is False
        assert orders.mark_order_paid(db, order.id, "pi_x", amount=10000, currency="usd") is False
        db.refresh(order)
        assert order.escrow_status == "pending"

        assert orders.mark_order_paid(db, order.id, "pi_x", amount=10000, currency="gbp") is True
        assert orders.mark_order_paid(db, order.id, "pi_x", amount=10000, currency="gbp") is False
        db.refresh(order)
        assert order.escrow_status == "held"
        assert order.payment_source == "card"
        assert order.stripe_payment_intent_id == "pi_x"

    def test_mark_paid_unknown_order(self, db):
        assert orders.mark_order_paid(db, 12345, "pi_missing") is False

    def test_payment_after_decline_is_refunded(self, db, seller, make_order, advance):
        order = make_order()
        advance(order, (seller, "decline"))

        with patch("stripe.Refund.create", return_value={"id": "re_late", "status": "succeeded"}) as refund:
            assert orders.mark_order_paid(db, order.id, "pi_late", amount=10000, currency="gbp") is False
            assert orders.mark_order_paid(db, order.id, "pi_late", amount=10000, currency="gbp") is False

        refund.assert_called_once_with(payment_intent="pi_late", idempotency_key="late_payment_refund:pi_late")
        db.refresh(order)
        assert order.status == "declined"
        assert order.escrow_status == "refunded"
        assert order.stripe_payment_intent_id == "pi_late"
        event_types = [e.event_type for e in audit.list_order_events(db, order)]
        assert "order.payment_refunded" in event_types
        assert "order.payment_received" not in event_types

    def test_payment_losing_race_with_decline_is_refunded(self, db, make_order):
        order = make_order()
        real_compare_and_set = orders.compare_and_set_escrow

        def decline_first(session, target, *args, **kwargs):
            if target.status != "declined":
                session.execute(
                    update(Order)
                    .where(Order.id == target.id)
                    .values(status="declined")
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            return real_compare_and_set(session, target, *args, **kwargs)

        with patch("settlement.services.orders.compare_and_set_escrow", side_effect=decline_first), patch(
            "stripe.Refund.create", return_value={"id": "re_race", "status": "succeeded"}
        ) as refund:
            assert orders.mark_order_paid(db, order.id, "pi_race") is False

        refund.assert_called_once()
        db.refresh(order)
        assert order.status == "declined"
        assert order.escrow_status == "refunded"

    def test_pay_from_balance(self, db, buyer, make_order):
        order = make_order(total_amount=3000)
        ledger.adjust_balance(db, buyer.id, 5000, "top_up", idempotency_key="topup-1")

        orders.pay_order_from_balance(db, buyer, order.id)

        db.refresh(order)
        assert order.escrow_status == "held"
        assert order.payment_source == "balance"
        assert _balance(db, buyer) == 2000

    def test_pay_from_balance_insufficient(self, db, buyer, make_order):
        order = make_order(total_amount=3000)
        ledger.adjust_balance(db, buyer.id, 1000, "top_up", idempotency_key="topup-1")

        with pytest.raises(InsufficientFunds):
            orders.pay_order_from_balance(db, buyer, order.id)

        db.refresh(order)
        assert order.escrow_status == "pending"
        assert _balance(db, buyer) == 1000
        assert db.query(BalanceTransaction).count() == 1


def _check_invariants(db, order, buyer):
    db.refresh(order)
    if order.escrow_status == "released":
        assert order.status in {"completed", "disputed"}
    if order.escrow_status == "partial_release":
        assert order.status in {"completed", "disputed"}
    if order.status == "completed":
        assert order.escrow_status in {"released", "partial_release"}
        assert order.completed_at is not None
    else:
        assert order.completed_at is None
    if order.status in {"declined", "cancelled"}:
        assert order.escrow_status in {"pending", "refunded"}
    if order.awaiting_approval:
        assert order.status == "in_progress"
    open_disputes = (
        db.query(Dispute).filter(Dispute.order_id == order.id, Dispute.status == "open").count()
    )
    assert open_disputes <= 1
    if open_disputes:
        assert order.status == "disputed"

    transactions = db.query(BalanceTransaction).filter(BalanceTransaction.user_id == buyer.id).all()
    assert _balance(db, buyer) == sum(t.amount for t in transactions)
    assert _balance(db, buyer) >= 0


@pytest.mark.parametrize("seed", range(12))
def test_random_action_sequences_keep_invariants(db, buyer, seller, mediator, outsider, make_order, seed):
    rng = random.Random(seed)
    actors = [buyer, seller, mediator, outsider]
    actions = [
        "accept",
        "decline",
        "start",
        "complete",
        "approve_completion",
        "cancel",
        "dispute",
        "resume_work",
    ]

    for _ in range(3):
        order = make_order(
            order_type=rng.choice(["booking", "product_request", "service"]),
            total_amount=rng.randint(100, 50000),
            funded=rng.random() < 0.8,
            source=rng.choice(["card", "balance"]),
        )
        for _ in range(20):
            try:
                if rng.random() < 0.2:
                    outcome = rng.choice(["release", "refund", "split", "resume"])
                    disputes.resolve_dispute(
                        db,
                        mediator,
                        order.id,
                        outcome,
                        refund_amount=rng.randint(1, order.total_amount - 1) if outcome == "split" else None,
                    )
                else:
                    orders.perform_order_action(
                        db,
                        rng.choice(actors),
                        order.id,
                        rng.choice(actions),
                        reason=rng.choice([None, "because"]),
                    )
            except EngineError:
                pass
            _check_invariants(db, order, buyer)
