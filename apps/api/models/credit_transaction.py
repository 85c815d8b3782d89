"""Credit/balance ledger entry model."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditTransaction(Base):
    """Immutable ledger entry. Corrections are appended, never edited."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    credits = Column(Integer, nullable=False, default=0)
    amount = Column(Numeric(14, 2), nullable=False, default=0)
    description = Column(String, nullable=True)
    status = Column(String, nullable=False, default="completed")
    payment_id = Column(String, ForeignKey("payments.id"), nullable=True, index=True)
    voucher_id = Column(String, ForeignKey("vouchers.id"), nullable=True, index=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        index=True,
    )

    user = relationship("User", back_populates="transactions")
    payment = relationship("Payment")
