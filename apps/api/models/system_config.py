"""Key/value system configuration."""

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.sql import func

from database import Base


class SystemConfig(Base):
    __tablename__ = "system_config"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    description = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
