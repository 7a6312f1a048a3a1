import logging

from sqlalchemy.orm import Session

from settlement.errors import ExternalProcessorError, NotFound, ValidationError
from settlement.models import SavedPaymentMethod, User
from settlement.services import payment_processor

logger = logging.getLogger(__name__)


def list_payment_methods(db: Session, user: User) -> list[SavedPaymentMethod]:
    return (
        db.query(SavedPaymentMethod)
        .filter(SavedPaymentMethod.user_id == user.id)
        .order_by(SavedPaymentMethod.is_default.desc(), SavedPaymentMethod.created_at.desc())
        .all()
    )


def _clear_default(db: Session, user: User, keep_id: int | None = None) -> None:
    query = db.query(SavedPaymentMethod).filter(
        SavedPaymentMethod.user_id == user.id,
        SavedPaymentMethod.is_default == True,
    )
    if keep_id is not None:
        query = query.filter(SavedPaymentMethod.id != keep_id)
    query.update({SavedPaymentMethod.is_default: False}, synchronize_session=False)


def save_payment_method(
    db: Session,
    user: User,
    stripe_payment_method_id: str,
    set_as_default: bool = False,
) -> SavedPaymentMethod:
    """Attach a card to the user's processor customer and remember it. The first card is the default."""
    existing = (
        db.query(SavedPaymentMethod)
        .filter(SavedPaymentMethod.stripe_payment_method_id == stripe_payment_method_id)
        .first()
    )
    if existing is not None:
        if existing.user_id != user.id:
            raise ValidationError("Payment method belongs to another account")
        return existing

    card = payment_processor.retrieve_payment_method(stripe_payment_method_id)
    if card is None:
        raise ValidationError("Only card payment methods are supported")
    customer_id = payment_processor.get_or_create_customer(db, user)
    payment_processor.attach_payment_method(stripe_payment_method_id, customer_id)

    is_first = db.query(SavedPaymentMethod).filter(SavedPaymentMethod.user_id == user.id).count() == 0
    is_default = set_as_default or is_first
    if is_default:
        _clear_default(db, user)

    method = SavedPaymentMethod(
        user_id=user.id,
        stripe_payment_method_id=stripe_payment_method_id,
        card_brand=card.brand,
        card_last_four=card.last_four,
        card_exp_month=card.exp_month,
        card_exp_year=card.exp_year,
        is_default=is_default,
    )
    db.add(method)
    db.commit()
    db.refresh(method)
    logger.info("Saved %s card ending %s for user %s", card.brand, card.last_four, user.id)
    return method


def _load_owned(db: Session, user: User, method_id: int) -> SavedPaymentMethod:
    method = (
        db.query(SavedPaymentMethod)
        .filter(SavedPaymentMethod.id == method_id, SavedPaymentMethod.user_id == user.id)
        .first()
    )
    if method is None:
        raise NotFound("Payment method not found")
    return method


def set_default_payment_method(db: Session, user: User, method_id: int) -> SavedPaymentMethod:
    method = _load_owned(db, user, method_id)
    _clear_default(db, user, keep_id=method.id)
    method.is_default = True
    db.commit()
    db.refresh(method)
    return method


def delete_payment_method(db: Session, user: User, method_id: int) -> None:
    method = _load_owned(db, user, method_id)
    try:
        payment_processor.detach_payment_method(method.stripe_payment_method_id)
    except ExternalProcessorError as exc:
        # the local record is removed regardless
        logger.warning("Failed to detach %s: %s", method.stripe_payment_method_id, exc.message)

    was_default = method.is_default
    db.delete(method)
    db.flush()
    if was_default:
        replacement = (
            db.query(SavedPaymentMethod)
            .filter(SavedPaymentMethod.user_id == user.id)
            .order_by(SavedPaymentMethod.created_at.desc(), SavedPaymentMethod.id.desc())
            .first()
        )
        if replacement is not None:
            replacement.is_default = True
    db.commit()
    logger.info("Removed payment method %s for user %s", method_id, user.id)
