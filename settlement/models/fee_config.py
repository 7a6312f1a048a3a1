from sqlalchemy import Column, DateTime, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.sql import func

from settlement.models.database import Base


class PlatformFeeConfig(Base):
    __tablename__ = "platform_fee_config"
    __table_args__ = (
        UniqueConstraint("role", "order_type", "effective_from", name="uq_fee_config_role_type_from"),
    )

    id = Column(Integer, primary_key=True, index=True)
    role = Column(String(32), nullable=False)  # fee tier or "default"
    order_type = Column(String(32), nullable=False)  # order type or "default"
    fee_percent = Column(Numeric(5, 2), nullable=False)
    effective_from = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    effective_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
