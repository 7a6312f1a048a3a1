from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from settlement.models.database import Base


class PlatformRole(str, Enum):
    MEMBER = "member"
    MEDIATOR = "mediator"
    ADMIN = "admin"


class FeeTier(str, Enum):
    DEFAULT = "default"
    EXECUTIVE = "executive"
    FOUNDER = "founder"
    APPRENTICE = "apprentice"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    display_name = Column(String(255), nullable=True)
    role = Column(String(32), nullable=False, default=PlatformRole.MEMBER.value)  # member | mediator | admin
    fee_tier = Column(String(32), nullable=False, default=FeeTier.DEFAULT.value)
    stripe_customer_id = Column(String(255), unique=True, nullable=True)
    preferred_currency = Column(String(3), nullable=False, default="GBP")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def is_mediator(self) -> bool:
        return self.role in {PlatformRole.MEDIATOR.value, PlatformRole.ADMIN.value}
