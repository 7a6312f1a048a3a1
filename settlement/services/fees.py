import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement.config import settings
from settlement.models import PlatformFeeConfig
from settlement.services.timeutils import db_datetime, utcnow

logger = logging.getLogger(__name__)

DEFAULT_KEY = "default"

# Used when the policy table cannot be read at all.
DEFAULT_FEE_CONFIG: dict[str, dict[str, Decimal]] = {
    "default": {"default": Decimal("8")},
    "executive": {"default": Decimal("8")},
    "founder": {"default": Decimal("8")},
    "apprentice": {"default": Decimal("5")},
}


@dataclass(frozen=True)
class FeeBreakdown:
    gross_amount: int
    fee_percent: Decimal
    fee_amount: int
    net_amount: int


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fee_lookup_chain(role: str | None, order_type: str | None) -> list[tuple[str, str]]:
    """Ordered (role, order_type) keys to try, most specific first."""
    role = role or DEFAULT_KEY
    order_type = order_type or DEFAULT_KEY
    chain = [
        (role, order_type),
        (role, DEFAULT_KEY),
        (DEFAULT_KEY, order_type),
        (DEFAULT_KEY, DEFAULT_KEY),
    ]
    seen: set[tuple[str, str]] = set()
    ordered = []
    for key in chain:
        if key not in seen:
            seen.add(key)
            ordered.append(key)
    return ordered


def _active_policy(db: Session) -> dict[tuple[str, str], Decimal]:
    now = db_datetime(db, utcnow())
    rows = (
        db.query(PlatformFeeConfig)
        .filter(
            PlatformFeeConfig.effective_from <= now,
            or_(PlatformFeeConfig.effective_until.is_(None), PlatformFeeConfig.effective_until > now),
        )
        .order_by(PlatformFeeConfig.effective_from.asc(), PlatformFeeConfig.id.asc())
        .all()
    )
    policy: dict[tuple[str, str], Decimal] = {}
    for row in rows:
        # later effective_from overwrites earlier
        policy[(row.role, row.order_type)] = Decimal(str(row.fee_percent))
    return policy


def _builtin_policy() -> dict[tuple[str, str], Decimal]:
    return {
        (role, order_type): percent
        for role, by_type in DEFAULT_FEE_CONFIG.items()
        for order_type, percent in by_type.items()
    }


def resolve_fee_percent(db: Session, role: str | None, order_type: str | None) -> Decimal:
    """Resolve the platform fee percent for a fee tier and order type. Never raises."""
    try:
        policy = _active_policy(db)
    except SQLAlchemyError as exc:
        logger.warning("Fee policy store unavailable, using built-in defaults: %s", exc)
        db.rollback()
        policy = _builtin_policy()

    for key in fee_lookup_chain(role, order_type):
        if key in policy:
            return policy[key]

    return settings.DEFAULT_FEE_PERCENT


def calculate_fee_breakdown(gross_amount: int, fee_percent: Decimal) -> FeeBreakdown:
    fee_amount = round_half_up(Decimal(gross_amount) * Decimal(fee_percent) / Decimal("100"))
    return FeeBreakdown(
        gross_amount=gross_amount,
        fee_percent=Decimal(fee_percent),
        fee_amount=fee_amount,
        net_amount=gross_amount - fee_amount,
    )


def quote_fee(db: Session, gross_amount: int, role: str | None, order_type: str | None) -> FeeBreakdown:
    return calculate_fee_breakdown(gross_amount, resolve_fee_percent(db, role, order_type))


def seed_default_fee_policy(db: Session) -> None:
    """Insert the default policy rows when the table is empty."""
    if db.query(PlatformFeeConfig).first():
        return
    for role, by_type in DEFAULT_FEE_CONFIG.items():
        for order_type, percent in by_type.items():
            db.add(PlatformFeeConfig(role=role, order_type=order_type, fee_percent=percent))
    db.commit()
