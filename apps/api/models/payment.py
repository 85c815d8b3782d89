"""Payment model written by the payment gateway integration."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.sql import func
import uuid

from database import Base


class Payment(Base):
    """Top-up or credit purchase; confirmed by the gateway callback."""

    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # credit, balance
    amount = Column(Numeric(14, 2), nullable=False)
    credit_amount = Column(Integer, nullable=True)
    method = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    external_id = Column(String, nullable=True, unique=True)
    metadata_json = Column(JSON, nullable=True)  # voucherId, creditBonus, balanceBonus, discountAmount
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
