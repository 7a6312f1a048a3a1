from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from settlement.models.database import Base


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutSchedule(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class PayoutRequest(Base):
    __tablename__ = "payout_requests"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("provider_profiles.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="GBP")
    status = Column(String(16), nullable=False, default=PayoutStatus.PENDING.value, index=True)
    stripe_payout_id = Column(String(255), unique=True, nullable=True)
    failure_reason = Column(Text, nullable=True)
    requested_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class PayoutPreferences(Base):
    __tablename__ = "payout_preferences"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("provider_profiles.id"), unique=True, nullable=False)
    payout_schedule = Column(String(16), nullable=False, default=PayoutSchedule.AUTOMATIC.value)
    minimum_payout_amount = Column(Integer, nullable=False, default=5000)
    preferred_payout_day = Column(Integer, nullable=True)  # 1..28, weekly/monthly schedules
    instant_payout_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
