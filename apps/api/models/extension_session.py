"""Per-conversation request configuration used by the browser extension."""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class ExtensionSession(Base):
    """Routing and prompt settings for one extension session."""

    __tablename__ = "extension_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=True)
    request_mode = Column(String, nullable=False, default="free_pool")  # free_user_key, free_pool, premium
    provider = Column(String, nullable=True)
    model = Column(String, nullable=True)
    answer_mode = Column(String, nullable=False, default="short")  # single, short, medium, long
    use_custom_prompt = Column(Boolean, nullable=False, default=False)
    system_prompt = Column(Text, nullable=True)
    knowledge_context = Column(Text, nullable=True)
    knowledge_file_ids = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="sessions")
