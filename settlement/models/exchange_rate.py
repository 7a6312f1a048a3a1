from sqlalchemy import Column, DateTime, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.sql import func

from settlement.models.database import Base


class ExchangeRate(Base):
    __tablename__ = "currency_exchange_rates"
    __table_args__ = (
        UniqueConstraint("base_currency", "target_currency", name="uq_exchange_rate_pair"),
    )

    id = Column(Integer, primary_key=True, index=True)
    base_currency = Column(String(3), nullable=False)
    target_currency = Column(String(3), nullable=False)
    rate = Column(Numeric(12, 6), nullable=False)
    fetched_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
