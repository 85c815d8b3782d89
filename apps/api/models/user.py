"""User model."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Account holding the prepaid credit and balance counters."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    credits = Column(Integer, nullable=False, default=0, server_default="0")
    balance = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    subscription_status = Column(String, nullable=False, default="free", server_default="free")
    subscription_expiry = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    api_credentials = relationship("ApiCredential", back_populates="user", cascade="all, delete-orphan")
    transactions = relationship("CreditTransaction", back_populates="user")
    sessions = relationship("ExtensionSession", back_populates="user", cascade="all, delete-orphan")
