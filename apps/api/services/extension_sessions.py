"""Extension session configuration (mode, model, prompt and knowledge links)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.enums import AnswerMode, RequestMode
from models.extension_session import ExtensionSession
from services.errors import ConfigurationError

logger = logging.getLogger(__name__)


def session_view(session: ExtensionSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "session_id": session.session_id,
        "name": session.name,
        "request_mode": session.request_mode,
        "provider": session.provider,
        "model": session.model,
        "answer_mode": session.answer_mode,
        "use_custom_prompt": bool(session.use_custom_prompt),
        "system_prompt": session.system_prompt,
        "knowledge_context": session.knowledge_context,
        "knowledge_file_ids": list(session.knowledge_file_ids or []),
        "is_active": bool(session.is_active),
        "last_used_at": session.last_used_at.isoformat() if session.last_used_at else None,
    }


async def create_session(
    user_id: str,
    db: AsyncSession,
    request_mode: RequestMode = RequestMode.FREE_POOL,
    answer_mode: AnswerMode = AnswerMode.SHORT,
    name: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    use_custom_prompt: bool = False,
    system_prompt: Optional[str] = None,
    knowledge_context: Optional[str] = None,
    knowledge_file_ids: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    session = ExtensionSession(
        session_id=f"sess_{uuid.uuid4().hex}",
        user_id=user_id,
        name=name,
        request_mode=RequestMode(request_mode).value,
        provider=provider,
        model=model,
        answer_mode=AnswerMode(answer_mode).value,
        use_custom_prompt=bool(use_custom_prompt),
        system_prompt=system_prompt,
        knowledge_context=knowledge_context,
        knowledge_file_ids=list(knowledge_file_ids or []),
        is_active=True,
    )
    db.add(session)
    await db.commit()
    await db.refresh(session)
    logger.info("Created %s session %s for user %s", session.request_mode, session.session_id, user_id)
    return session_view(session)


async def list_sessions(user_id: str, db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(ExtensionSession)
        .where(ExtensionSession.user_id == user_id)
        .order_by(ExtensionSession.created_at.desc(), ExtensionSession.id.desc())
    )
    return [session_view(row) for row in result.scalars().all()]


async def deactivate_session(user_id: str, session_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(ExtensionSession).where(
            ExtensionSession.session_id == session_id,
            ExtensionSession.user_id == user_id,
        )
    )
    session = result.scalar_one_or_none()
    if session is None:
        raise ConfigurationError("Session not found")
    session.is_active = False
    await db.commit()
    await db.refresh(session)
    return session_view(session)
