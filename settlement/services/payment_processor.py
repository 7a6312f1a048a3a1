"""Stripe adapter. The rest of the engine never imports ``stripe`` directly."""
import logging
from dataclasses import dataclass, field

import stripe
from sqlalchemy.orm import Session

from settlement.errors import ChargeDeclined, ExternalProcessorError, ProcessorUnavailable
from settlement.models import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    id: str
    status: str
    amount: int
    currency: str
    client_secret: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PayoutResult:
    id: str
    status: str


@dataclass(frozen=True)
class RefundResult:
    id: str
    status: str


@dataclass(frozen=True)
class CardDetails:
    id: str
    brand: str | None
    last_four: str | None
    exp_month: int | None
    exp_year: int | None


def _configure() -> None:
    from settlement.config import settings

    if not settings.STRIPE_SECRET_KEY:
        raise ExternalProcessorError("STRIPE_SECRET_KEY is not set")
    stripe.api_key = settings.STRIPE_SECRET_KEY


def _processor_error(action: str, exc: stripe.StripeError) -> ExternalProcessorError:
    # A dropped connection or timeout may still have been applied on the processor side.
    if isinstance(exc, stripe.APIConnectionError):
        return ProcessorUnavailable(f"{action} did not complete: {exc}")
    return ExternalProcessorError(f"{action} failed: {exc}")


def _charge_from_intent(intent) -> ChargeResult:
    return ChargeResult(
        id=intent["id"],
        status=intent["status"],
        amount=int(intent["amount"]),
        currency=str(intent["currency"]).upper(),
        client_secret=intent.get("client_secret"),
        metadata=dict(intent.get("metadata") or {}),
    )


def get_or_create_customer(db: Session, user: User) -> str:
    """Return the user's Stripe customer id, creating the customer on first use."""
    if user.stripe_customer_id:
        return user.stripe_customer_id

    _configure()
    try:
        customer = stripe.Customer.create(
            email=user.email,
            name=user.display_name or None,
            metadata={"user_id": str(user.id)},
        )
    except stripe.StripeError as exc:
        raise _processor_error("Customer creation", exc) from exc

    user.stripe_customer_id = customer["id"]
    db.commit()
    return user.stripe_customer_id


def create_charge(
    amount: int,
    currency: str,
    customer_id: str | None,
    payment_method_id: str | None = None,
    metadata: dict | None = None,
    confirm: bool = False,
    save_for_future_use: bool = False,
    idempotency_key: str | None = None,
) -> ChargeResult:
    """Create a PaymentIntent. With ``confirm`` the charge is attempted immediately off-session."""
    _configure()
    params = {
        "amount": amount,
        "currency": currency.lower(),
        "customer": customer_id,
        "metadata": metadata or {},
    }
    if payment_method_id:
        params["payment_method"] = payment_method_id
    if confirm:
        params["confirm"] = True
        params["off_session"] = True
    elif save_for_future_use:
        params["setup_future_usage"] = "off_session"
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    try:
        intent = stripe.PaymentIntent.create(**params)
    except stripe.CardError as exc:
        decline_code = getattr(exc, "code", None) or "card_declined"
        raise ChargeDeclined(getattr(exc, "user_message", None) or str(exc), decline_code=decline_code) from exc
    except stripe.StripeError as exc:
        raise _processor_error("PaymentIntent creation", exc) from exc
    return _charge_from_intent(intent)


def retrieve_charge(payment_intent_id: str) -> ChargeResult:
    _configure()
    try:
        intent = stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as exc:
        raise _processor_error("PaymentIntent retrieval", exc) from exc
    return _charge_from_intent(intent)


def create_payout(
    amount: int,
    currency: str,
    destination_account: str,
    metadata: dict | None = None,
    idempotency_key: str | None = None,
) -> PayoutResult:
    """Start a payout. Resending the same ``idempotency_key`` never pays out twice."""
    _configure()
    params = {
        "amount": amount,
        "currency": currency.lower(),
        "metadata": metadata or {},
        "stripe_account": destination_account,
    }
    if idempotency_key:
        params["idempotency_key"] = idempotency_key
    try:
        payout = stripe.Payout.create(**params)
    except stripe.StripeError as exc:
        raise _processor_error("Payout creation", exc) from exc
    return PayoutResult(id=payout["id"], status=payout["status"])


def refund_payment(payment_intent_id: str, idempotency_key: str | None = None) -> RefundResult:
    """Refund a captured PaymentIntent in full."""
    _configure()
    params = {"payment_intent": payment_intent_id}
    if idempotency_key:
        params["idempotency_key"] = idempotency_key
    try:
        refund = stripe.Refund.create(**params)
    except stripe.StripeError as exc:
        raise _processor_error("Refund", exc) from exc
    return RefundResult(id=refund["id"], status=refund["status"])


def get_available_balance(account_id: str, currency: str) -> int:
    """Available balance of a connected account in one currency, 0 when absent."""
    _configure()
    try:
        balance = stripe.Balance.retrieve(stripe_account=account_id)
    except stripe.StripeError as exc:
        raise _processor_error("Balance retrieval", exc) from exc

    wanted = currency.lower()
    for entry in balance["available"]:
        if str(entry["currency"]).lower() == wanted:
            return int(entry["amount"])
    return 0


def _card_details(method) -> CardDetails | None:
    card = method.get("card")
    if not card:
        return None
    return CardDetails(
        id=method["id"],
        brand=card.get("brand"),
        last_four=card.get("last4"),
        exp_month=card.get("exp_month"),
        exp_year=card.get("exp_year"),
    )


def retrieve_payment_method(payment_method_id: str) -> CardDetails | None:
    """Card details of a payment method, None when it is not a card."""
    _configure()
    try:
        method = stripe.PaymentMethod.retrieve(payment_method_id)
    except stripe.StripeError as exc:
        raise _processor_error("PaymentMethod retrieval", exc) from exc
    return _card_details(method)


def attach_payment_method(payment_method_id: str, customer_id: str) -> None:
    _configure()
    try:
        stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
    except stripe.StripeError as exc:
        raise _processor_error("PaymentMethod attach", exc) from exc


def detach_payment_method(payment_method_id: str) -> None:
    _configure()
    try:
        stripe.PaymentMethod.detach(payment_method_id)
    except stripe.StripeError as exc:
        raise _processor_error("PaymentMethod detach", exc) from exc
