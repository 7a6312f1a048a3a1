"""
Wallet ledger. Every balance change goes through ``apply_adjustment`` and
leaves exactly one BalanceTransaction row; AccountBalance.balance_amount is
never written anywhere else.
"""
import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.config import settings
from settlement.errors import ConflictingTransition, NotAuthorized, ValidationError
from settlement.models import AccountBalance, BalanceTransaction, User
from settlement.models.ledger import TransactionType
from settlement.services import payment_processor
from settlement.services.timeutils import utcnow

logger = logging.getLogger(__name__)

TOP_UP_METADATA_TYPE = "balance_top_up"


@dataclass(frozen=True)
class LedgerResult:
    success: bool
    new_balance: int
    error_message: str | None = None


@dataclass(frozen=True)
class TopUpIntent:
    payment_intent_id: str
    client_secret: str | None
    amount: int
    currency: str


def _find_by_key(db: Session, idempotency_key: str | None) -> BalanceTransaction | None:
    if not idempotency_key:
        return None
    return db.query(BalanceTransaction).filter(BalanceTransaction.idempotency_key == idempotency_key).first()


def _lock_balance(db: Session, user_id: int) -> AccountBalance:
    balance = (
        db.query(AccountBalance)
        .filter(AccountBalance.user_id == user_id)
        .with_for_update()
        .first()
    )
    if balance is None:
        balance = AccountBalance(user_id=user_id, balance_amount=0, currency=settings.DEFAULT_CURRENCY)
        db.add(balance)
        db.flush()
    return balance


def apply_adjustment(
    db: Session,
    user_id: int,
    amount: int,
    transaction_type: str,
    idempotency_key: str | None = None,
    description: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
) -> LedgerResult:
    """Adjust a balance inside the caller's transaction. Flushes, never commits."""
    existing = _find_by_key(db, idempotency_key)
    if existing is not None:
        logger.info("Ledger key %s already applied for user %s, skipping", idempotency_key, user_id)
        return LedgerResult(success=True, new_balance=existing.balance_after)

    savepoint = db.begin_nested()
    try:
        balance = _lock_balance(db, user_id)
        balance_before = balance.balance_amount
        balance_after = balance_before + amount

        if balance_after < 0:
            savepoint.rollback()
            return LedgerResult(success=False, new_balance=balance_before, error_message="Insufficient balance")

        values = {
            AccountBalance.balance_amount: balance_after,
            AccountBalance.updated_at: utcnow(),
        }
        if transaction_type == TransactionType.TOP_UP.value:
            values[AccountBalance.last_topped_up_at] = utcnow()

        updated = (
            db.query(AccountBalance)
            .filter(AccountBalance.id == balance.id, AccountBalance.balance_amount == balance_before)
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            savepoint.rollback()
            raise ConflictingTransition("Balance changed concurrently, retry the operation")

        db.add(
            BalanceTransaction(
                user_id=user_id,
                transaction_type=transaction_type,
                amount=amount,
                balance_before=balance_before,
                balance_after=balance_after,
                reference_type=reference_type,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                description=description,
            )
        )
        db.flush()
        savepoint.commit()
    except IntegrityError:
        # A concurrent delivery inserted the same key first.
        savepoint.rollback()
        existing = _find_by_key(db, idempotency_key)
        if existing is None:
            raise
        logger.info("Ledger key %s applied concurrently for user %s", idempotency_key, user_id)
        return LedgerResult(success=True, new_balance=existing.balance_after)

    db.expire(balance)
    logger.info(
        "Ledger %s of %s for user %s: %s -> %s",
        transaction_type,
        amount,
        user_id,
        balance_before,
        balance_after,
    )
    return LedgerResult(success=True, new_balance=balance_after)


def adjust_balance(
    db: Session,
    user_id: int,
    amount: int,
    transaction_type: str,
    idempotency_key: str | None = None,
    description: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
) -> LedgerResult:
    """Apply one adjustment as its own atomic unit."""
    try:
        result = apply_adjustment(
            db,
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            idempotency_key=idempotency_key,
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
        )
    except Exception:
        db.rollback()
        raise
    if result.success:
        db.commit()
    else:
        db.rollback()
    return result


def get_balance(db: Session, user: User) -> AccountBalance:
    """Return the user's balance, or an unsaved zero balance when none exists yet."""
    balance = db.query(AccountBalance).filter(AccountBalance.user_id == user.id).first()
    if balance is None:
        return AccountBalance(user_id=user.id, balance_amount=0, currency=settings.DEFAULT_CURRENCY)
    return balance


def list_balance_transactions(db: Session, user: User, limit: int = 20) -> list[BalanceTransaction]:
    return (
        db.query(BalanceTransaction)
        .filter(BalanceTransaction.user_id == user.id)
        .order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
        .limit(limit)
        .all()
    )


def create_top_up_intent(
    db: Session,
    user: User,
    amount: int,
    payment_method_id: str | None = None,
) -> TopUpIntent:
    if amount < settings.TOP_UP_MIN_AMOUNT:
        raise ValidationError(f"Minimum top-up amount is {settings.TOP_UP_MIN_AMOUNT}")
    if amount > settings.TOP_UP_MAX_AMOUNT:
        raise ValidationError(f"Maximum top-up amount is {settings.TOP_UP_MAX_AMOUNT}")

    customer_id = payment_processor.get_or_create_customer(db, user)
    currency = settings.DEFAULT_CURRENCY
    charge = payment_processor.create_charge(
        amount=amount,
        currency=currency,
        customer_id=customer_id,
        payment_method_id=payment_method_id,
        metadata={"type": TOP_UP_METADATA_TYPE, "user_id": str(user.id)},
        save_for_future_use=payment_method_id is None,
    )
    logger.info("Top-up intent %s created for user %s (%s)", charge.id, user.id, amount)
    return TopUpIntent(
        payment_intent_id=charge.id,
        client_secret=charge.client_secret,
        amount=amount,
        currency=currency,
    )


def confirm_top_up(db: Session, payment_intent_id: str, user: User | None = None) -> LedgerResult:
    """Credit a succeeded top-up. Safe to call any number of times per intent."""
    charge = payment_processor.retrieve_charge(payment_intent_id)
    if charge.status != "succeeded":
        raise ValidationError("Payment not successful")

    metadata = charge.metadata or {}
    if metadata.get("type") not in {None, TOP_UP_METADATA_TYPE}:
        raise ValidationError("Payment is not a balance top-up")
    try:
        owner_id = int(metadata.get("user_id", ""))
    except (TypeError, ValueError):
        raise ValidationError("Missing user ID in payment metadata")

    if user is not None and user.id != owner_id:
        raise NotAuthorized("Payment belongs to another user")

    return credit_top_up(db, payment_intent_id, owner_id, charge.amount)


def credit_top_up(db: Session, payment_intent_id: str, user_id: int, amount: int) -> LedgerResult:
    return adjust_balance(
        db,
        user_id=user_id,
        amount=amount,
        transaction_type=TransactionType.TOP_UP.value,
        idempotency_key=payment_intent_id,
        description="Account balance top-up",
        reference_type="stripe_topup",
    )
