"""Upstream API credential model (user-owned or house pool)."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base
from models.enums import CredentialStatus


class ApiCredential(Base):
    """Encrypted upstream key. A NULL owner marks a shared house key."""

    __tablename__ = "api_credentials"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    encrypted_key = Column(Text, nullable=False)
    key_fingerprint = Column(String, nullable=False, unique=True, index=True)
    key_prefix = Column(String, nullable=False)
    key_suffix = Column(String, nullable=False)
    status = Column(String, nullable=False, default=CredentialStatus.ACTIVE.value, index=True)  # active, rate_limited, dead
    priority = Column(Integer, nullable=False, default=100)
    requests_today = Column(Integer, nullable=False, default=0)
    daily_quota_date = Column(String, nullable=True)  # YYYY-MM-DD of the last counted request
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)
    last_error_type = Column(String, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        index=True,
    )

    user = relationship("User", back_populates="api_credentials")
