import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from settlement.errors import ValidationError
from settlement.models import ExchangeRate, User
from settlement.services.fees import round_half_up
from settlement.services.timeutils import db_datetime, utcnow

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = ("GBP", "EUR", "USD")

# Approximate rates used when no cached rate is current.
FALLBACK_RATES: dict[tuple[str, str], Decimal] = {
    ("GBP", "EUR"): Decimal("1.17"),
    ("GBP", "USD"): Decimal("1.27"),
    ("EUR", "GBP"): Decimal("0.85"),
    ("EUR", "USD"): Decimal("1.09"),
    ("USD", "GBP"): Decimal("0.79"),
    ("USD", "EUR"): Decimal("0.92"),
}


@dataclass(frozen=True)
class Conversion:
    amount: int
    rate: Decimal


def _normalize(currency: str) -> str:
    code = (currency or "").strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency: {currency}")
    return code


def get_preferred_currency(user: User) -> str:
    return user.preferred_currency or SUPPORTED_CURRENCIES[0]


def update_preferred_currency(db: Session, user: User, currency: str) -> str:
    user.preferred_currency = _normalize(currency)
    db.commit()
    return user.preferred_currency


def _cached_rate(db: Session, base: str, target: str) -> Decimal | None:
    row = (
        db.query(ExchangeRate)
        .filter(
            ExchangeRate.base_currency == base,
            ExchangeRate.target_currency == target,
            ExchangeRate.expires_at > db_datetime(db, utcnow()),
        )
        .first()
    )
    return Decimal(str(row.rate)) if row else None


def find_rate(db: Session, from_currency: str, to_currency: str) -> Decimal:
    direct = _cached_rate(db, from_currency, to_currency)
    if direct is not None:
        return direct

    reverse = _cached_rate(db, to_currency, from_currency)
    if reverse is not None and reverse != 0:
        return Decimal("1") / reverse

    fallback = FALLBACK_RATES.get((from_currency, to_currency))
    if fallback is not None:
        logger.warning("No current %s->%s rate, using fallback %s", from_currency, to_currency, fallback)
        return fallback

    raise ValidationError("Exchange rate not available")


def convert_currency(db: Session, amount: int, from_currency: str, to_currency: str) -> Conversion:
    """Convert an amount in minor units, rounding half-up."""
    from_currency = _normalize(from_currency)
    to_currency = _normalize(to_currency)
    if from_currency == to_currency:
        return Conversion(amount=amount, rate=Decimal("1"))

    rate = find_rate(db, from_currency, to_currency)
    return Conversion(amount=round_half_up(Decimal(amount) * rate), rate=rate)
