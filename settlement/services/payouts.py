import logging

from sqlalchemy.orm import Session

from settlement.config import settings
from settlement.errors import (
    BelowMinimum,
    ExternalProcessorError,
    InsufficientBalance,
    NoPayoutAccount,
    NotAuthorized,
    ProcessorUnavailable,
    ValidationError,
)
from settlement.models import PayoutPreferences, PayoutRequest, ProviderProfile, User
from settlement.models.payout import PayoutSchedule, PayoutStatus
from settlement.services import payment_processor
from settlement.services.timeutils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MINIMUM_PAYOUT_AMOUNT = 5000
MINIMUM_PAYOUT_FLOOR = 100

_NOTIFICATION_STATUSES = {
    "paid": PayoutStatus.COMPLETED.value,
    "failed": PayoutStatus.FAILED.value,
}


def _provider_for(db: Session, user: User) -> ProviderProfile | None:
    return db.query(ProviderProfile).filter(ProviderProfile.user_id == user.id).first()


def _require_provider(db: Session, user: User) -> ProviderProfile:
    provider = _provider_for(db, user)
    if provider is None:
        raise NotAuthorized("Not a provider")
    return provider


def get_payout_preferences(db: Session, user: User) -> PayoutPreferences:
    """Stored preferences, or unsaved defaults when the provider never set any."""
    provider = _require_provider(db, user)
    preferences = db.query(PayoutPreferences).filter(PayoutPreferences.provider_id == provider.id).first()
    if preferences is None:
        return PayoutPreferences(
            provider_id=provider.id,
            payout_schedule=PayoutSchedule.AUTOMATIC.value,
            minimum_payout_amount=DEFAULT_MINIMUM_PAYOUT_AMOUNT,
            preferred_payout_day=None,
            instant_payout_enabled=False,
        )
    return preferences


def update_payout_preferences(
    db: Session,
    user: User,
    payout_schedule: str | None = None,
    minimum_payout_amount: int | None = None,
    preferred_payout_day: int | None = None,
    instant_payout_enabled: bool | None = None,
) -> PayoutPreferences:
    provider = _require_provider(db, user)
    if payout_schedule is not None and payout_schedule not in {s.value for s in PayoutSchedule}:
        raise ValidationError(f"Unknown payout schedule: {payout_schedule}")
    if minimum_payout_amount is not None and minimum_payout_amount < MINIMUM_PAYOUT_FLOOR:
        raise ValidationError(f"Minimum payout amount must be at least {MINIMUM_PAYOUT_FLOOR}")
    if preferred_payout_day is not None and not 1 <= preferred_payout_day <= 28:
        raise ValidationError("Preferred payout day must be between 1 and 28")

    preferences = db.query(PayoutPreferences).filter(PayoutPreferences.provider_id == provider.id).first()
    if preferences is None:
        preferences = PayoutPreferences(
            provider_id=provider.id,
            payout_schedule=PayoutSchedule.AUTOMATIC.value,
            minimum_payout_amount=DEFAULT_MINIMUM_PAYOUT_AMOUNT,
            instant_payout_enabled=False,
        )
        db.add(preferences)

    if payout_schedule is not None:
        preferences.payout_schedule = payout_schedule
    if minimum_payout_amount is not None:
        preferences.minimum_payout_amount = minimum_payout_amount
    if preferred_payout_day is not None:
        preferences.preferred_payout_day = preferred_payout_day
    if instant_payout_enabled is not None:
        preferences.instant_payout_enabled = instant_payout_enabled

    db.commit()
    db.refresh(preferences)
    return preferences


def list_payout_requests(db: Session, user: User) -> list[PayoutRequest]:
    provider = _provider_for(db, user)
    if provider is None:
        return []
    return (
        db.query(PayoutRequest)
        .filter(PayoutRequest.provider_id == provider.id)
        .order_by(PayoutRequest.requested_at.desc(), PayoutRequest.id.desc())
        .all()
    )


def request_payout(db: Session, user: User, amount: int) -> PayoutRequest:
    """Pay out part of a provider's processor balance to their connected account.

    Nothing is written unless both balance checks pass. Once the pending row
    exists it is never removed: a processor failure marks it failed, while a
    timeout leaves it pending because the payout may have been created.
    """
    provider = _provider_for(db, user)
    if provider is None or not provider.stripe_account_id:
        raise NoPayoutAccount("Provider not found or payout account not connected")

    currency = provider.payout_currency or settings.DEFAULT_CURRENCY
    available = payment_processor.get_available_balance(provider.stripe_account_id, currency)
    if amount > available:
        raise InsufficientBalance(f"Insufficient balance. Available: {available}")
    if amount < settings.PAYOUT_MIN_AMOUNT:
        raise BelowMinimum(f"Minimum payout amount is {settings.PAYOUT_MIN_AMOUNT}")

    payout_request = PayoutRequest(
        provider_id=provider.id,
        amount=amount,
        currency=currency.upper(),
        status=PayoutStatus.PENDING.value,
    )
    db.add(payout_request)
    db.commit()
    db.refresh(payout_request)

    try:
        payout = payment_processor.create_payout(
            amount=amount,
            currency=currency,
            destination_account=provider.stripe_account_id,
            metadata={"payout_request_id": str(payout_request.id), "provider_id": str(provider.id)},
            idempotency_key=f"payout_request:{payout_request.id}",
        )
    except ProcessorUnavailable as exc:
        logger.warning("Payout request %s left pending, outcome unknown: %s", payout_request.id, exc.message)
        raise
    except ExternalProcessorError as exc:
        payout_request.status = PayoutStatus.FAILED.value
        payout_request.failure_reason = exc.message
        db.commit()
        logger.warning("Payout request %s failed: %s", payout_request.id, exc.message)
        raise

    payout_request.status = PayoutStatus.PROCESSING.value
    payout_request.stripe_payout_id = payout.id
    payout_request.processed_at = utcnow()
    db.commit()
    db.refresh(payout_request)
    logger.info("Payout request %s processing as %s (%s %s)", payout_request.id, payout.id, amount, currency)
    return payout_request


def _adopt_pending_request(db: Session, payout_request_id: int, stripe_payout_id: str) -> PayoutRequest | None:
    """Attach a payout to the request whose creation call timed out before the id came back."""
    adopted = (
        db.query(PayoutRequest)
        .filter(
            PayoutRequest.id == payout_request_id,
            PayoutRequest.status == PayoutStatus.PENDING.value,
            PayoutRequest.stripe_payout_id.is_(None),
        )
        .update(
            {
                PayoutRequest.status: PayoutStatus.PROCESSING.value,
                PayoutRequest.stripe_payout_id: stripe_payout_id,
                PayoutRequest.processed_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    if adopted != 1:
        return None
    db.flush()
    logger.info("Payout %s matched pending request %s", stripe_payout_id, payout_request_id)
    return db.get(PayoutRequest, payout_request_id)


def apply_payout_notification(
    db: Session,
    stripe_payout_id: str,
    status: str,
    failure_reason: str | None = None,
    payout_request_id: int | None = None,
) -> PayoutRequest | None:
    """Advance a processing payout from a processor notification ("paid" or "failed")."""
    target = _NOTIFICATION_STATUSES.get(status)
    if target is None:
        logger.info("Ignoring payout %s notification status %s", stripe_payout_id, status)
        return None

    payout_request = db.query(PayoutRequest).filter(PayoutRequest.stripe_payout_id == stripe_payout_id).first()
    if payout_request is None and payout_request_id is not None:
        payout_request = _adopt_pending_request(db, payout_request_id, stripe_payout_id)
    if payout_request is None:
        logger.warning("Notification for unknown payout %s", stripe_payout_id)
        return None
    db.refresh(payout_request)
    if payout_request.status != PayoutStatus.PROCESSING.value:
        logger.info("Payout %s already %s, skipping", stripe_payout_id, payout_request.status)
        return payout_request

    updated = (
        db.query(PayoutRequest)
        .filter(PayoutRequest.id == payout_request.id, PayoutRequest.status == PayoutStatus.PROCESSING.value)
        .update(
            {
                PayoutRequest.status: target,
                PayoutRequest.completed_at: utcnow() if target == PayoutStatus.COMPLETED.value else None,
                PayoutRequest.failure_reason: failure_reason if target == PayoutStatus.FAILED.value else None,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(payout_request)
    if updated == 1:
        logger.info("Payout %s is now %s", stripe_payout_id, target)
    return payout_request
