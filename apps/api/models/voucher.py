"""Voucher and voucher redemption models."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Voucher(Base):
    """Promotional code granting a discount and/or bonus credits/balance."""

    __tablename__ = "vouchers"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String, nullable=False, unique=True, index=True)  # stored upper-case
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String, nullable=False)  # credit, balance
    discount_type = Column(String, nullable=False, default="fixed")  # percentage, fixed
    value = Column(Numeric(14, 2), nullable=False, default=0)
    min_amount = Column(Numeric(14, 2), nullable=True)
    max_discount = Column(Numeric(14, 2), nullable=True)
    credit_bonus = Column(Integer, nullable=True)
    balance_bonus = Column(Numeric(14, 2), nullable=True)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    allow_multiple_use_per_user = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    redemptions = relationship("VoucherRedemption", back_populates="voucher")


class VoucherRedemption(Base):
    """One row per voucher use.

    ``per_user_key`` holds the user id for single-use-per-user vouchers and is
    NULL otherwise, so the unique index only binds the single-use case.
    """

    __tablename__ = "voucher_redemptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    voucher_id = Column(String, ForeignKey("vouchers.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    discount_amount = Column(Numeric(14, 2), nullable=False, default=0)
    credits_bonus = Column(Integer, nullable=True)
    balance_bonus = Column(Numeric(14, 2), nullable=True)
    per_user_key = Column(String, nullable=True)
    used_at = Column(DateTime(timezone=True), server_default=func.now())

    voucher = relationship("Voucher", back_populates="redemptions")

    __table_args__ = (
        Index("uq_voucher_redemptions_voucher_per_user", "voucher_id", "per_user_key", unique=True),
    )
