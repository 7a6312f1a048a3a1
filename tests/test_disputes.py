from unittest.mock import patch

import pytest

from settlement.errors import AlreadyResolved, InvalidTransition, NotAuthorized, NotFound, ValidationError
from settlement.models import AccountBalance, Dispute
from settlement.services import audit, disputes, orders


@pytest.fixture
def disputed_order(buyer, seller, make_order, advance):
    """A card-funded booking the buyer disputed while work was in progress."""
    order = make_order(funded=True)
    return advance(order, (seller, "accept"), (seller, "start"), (buyer, "dispute"))


def _buyer_balance(db, buyer):
    row = db.query(AccountBalance).filter(AccountBalance.user_id == buyer.id).first()
    return row.balance_amount if row else 0


def test_release_completes_order(db, mediator, disputed_order):
    dispute = disputes.resolve_dispute(db, mediator, disputed_order.id, "release", notes="Work delivered")

    db.refresh(disputed_order)
    assert disputed_order.status == "completed"
    assert disputed_order.escrow_status == "released"
    assert disputed_order.completed_at is not None
    assert dispute.status == "resolved"
    assert dispute.outcome == "release"
    assert dispute.resolved_by == mediator.id
    assert dispute.resolution_notes == "Work delivered"
    assert audit.list_order_events(db, disputed_order)[-1].event_type == "order.dispute_resolved"


def test_refund_cancels_order(db, mediator, disputed_order):
    disputes.resolve_dispute(db, mediator, disputed_order.id, "refund")

    db.refresh(disputed_order)
    assert disputed_order.status == "cancelled"
    assert disputed_order.escrow_status == "refunded"


def test_split_records_refund_amount(db, mediator, disputed_order):
    dispute = disputes.resolve_dispute(db, mediator, disputed_order.id, "split", refund_amount=4000)

    db.refresh(disputed_order)
    assert disputed_order.status == "completed"
    assert disputed_order.escrow_status == "partial_release"
    assert dispute.refund_amount == 4000


@pytest.mark.parametrize("amount", [None, 0, 10000, 12000])
def test_split_amount_must_be_inside_total(db, mediator, disputed_order, amount):
    with pytest.raises(ValidationError):
        disputes.resolve_dispute(db, mediator, disputed_order.id, "split", refund_amount=amount)

    db.refresh(disputed_order)
    assert disputed_order.status == "disputed"
    assert db.query(Dispute).filter(Dispute.status == "open").count() == 1


def test_resume_closes_dispute_and_allows_work(db, seller, mediator, disputed_order):
    disputes.resolve_dispute(db, mediator, disputed_order.id, "resume")

    db.refresh(disputed_order)
    assert disputed_order.status == "disputed"
    assert disputed_order.escrow_status == "held"

    orders.perform_order_action(db, seller, disputed_order.id, "resume_work")
    db.refresh(disputed_order)
    assert disputed_order.status == "in_progress"


def test_resume_rejected_after_release(db, buyer, seller, mediator, make_order, advance):
    order = make_order(funded=True)
    advance(order, (seller, "accept"), (seller, "start"), (seller, "complete"), (buyer, "dispute"))

    with pytest.raises(ValidationError):
        disputes.resolve_dispute(db, mediator, order.id, "resume")

    disputes.resolve_dispute(db, mediator, order.id, "release")
    db.refresh(order)
    assert order.status == "completed"
    assert order.escrow_status == "released"
    assert order.completed_at is not None


def test_only_mediator_can_resolve(db, buyer, disputed_order):
    with pytest.raises(NotAuthorized):
        disputes.resolve_dispute(db, buyer, disputed_order.id, "refund")


def test_no_open_dispute(db, mediator, make_order):
    order = make_order()
    with pytest.raises(NotFound):
        disputes.resolve_dispute(db, mediator, order.id, "release")


def test_unknown_outcome(db, mediator, disputed_order):
    with pytest.raises(ValidationError):
        disputes.resolve_dispute(db, mediator, disputed_order.id, "coin_flip")


def test_resolving_twice(db, mediator, disputed_order):
    disputes.resolve_dispute(db, mediator, disputed_order.id, "resume")

    with pytest.raises(NotFound):
        disputes.resolve_dispute(db, mediator, disputed_order.id, "release")


def test_concurrent_resolution_loses(db, mediator, disputed_order):
    stale = db.query(Dispute).filter(Dispute.order_id == disputed_order.id).one()

    def already_closed(session, order_id):
        session.query(Dispute).filter(Dispute.id == stale.id).update(
            {Dispute.status: "resolved", Dispute.outcome: "resume"}, synchronize_session=False
        )
        session.commit()
        return stale

    with patch("settlement.services.disputes.get_open_dispute", side_effect=already_closed):
        with pytest.raises(AlreadyResolved):
            disputes.resolve_dispute(db, mediator, disputed_order.id, "resume")


def test_resolution_requires_disputed_status(db, buyer, seller, mediator, make_order, advance):
    order = make_order(funded=True)
    advance(order, (seller, "accept"), (seller, "start"), (buyer, "dispute"))
    # an open dispute on an order that left the disputed status through another path
    order.status = "in_progress"
    db.commit()

    with pytest.raises(InvalidTransition):
        disputes.resolve_dispute(db, mediator, order.id, "release")


def test_refund_credits_wallet_for_balance_orders(db, buyer, seller, mediator, make_order, advance):
    order = make_order(funded=True, source="balance")
    advance(order, (seller, "accept"), (seller, "start"), (buyer, "dispute"))
    assert _buyer_balance(db, buyer) == 0

    disputes.resolve_dispute(db, mediator, order.id, "refund")
    assert _buyer_balance(db, buyer) == 10000


def test_split_credits_partial_refund_for_balance_orders(db, buyer, seller, mediator, make_order, advance):
    order = make_order(funded=True, source="balance")
    advance(order, (seller, "accept"), (seller, "start"), (buyer, "dispute"))

    disputes.resolve_dispute(db, mediator, order.id, "split", refund_amount=2500)
    assert _buyer_balance(db, buyer) == 2500
