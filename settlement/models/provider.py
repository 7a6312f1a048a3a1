from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from settlement.models.database import Base


class ProviderProfile(Base):
    __tablename__ = "provider_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    stripe_account_id = Column(String(255), nullable=True)  # connected payout account
    payout_currency = Column(String(3), nullable=False, default="GBP")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
