"""Audit records for upstream calls and the chat turns they produce."""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func
import uuid

from database import Base


class LLMRequest(Base):
    """One routed question, successful or not."""

    __tablename__ = "llm_requests"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(String, nullable=True, index=True)
    request_mode = Column(String, nullable=False)
    provider = Column(String, nullable=True)
    model = Column(String, nullable=True)
    system_prompt = Column(Text, nullable=True)
    knowledge_context = Column(Text, nullable=True)
    file_ids = Column(JSON, nullable=True)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=True)  # only on success
    status = Column(String, nullable=False)  # success, failed
    error_message = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    input_tokens = Column(Integer, nullable=True)
    output_tokens = Column(Integer, nullable=True)
    total_tokens = Column(Integer, nullable=True)
    cost_credits = Column(Integer, nullable=False, default=0)
    cached = Column(Boolean, nullable=False, default=False)
    response_time_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class ChatHistory(Base):
    """Question/answer turn linked to its request record."""

    __tablename__ = "chat_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(String, nullable=True, index=True)
    llm_request_id = Column(String, ForeignKey("llm_requests.id"), nullable=False, unique=True)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    answer_mode = Column(String, nullable=True)
    system_prompt = Column(Text, nullable=True)
    user_prompt = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
