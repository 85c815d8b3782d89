"""Knowledge provider: extracted text of files linked to a session."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.knowledge_file import KnowledgeFile


@dataclass(frozen=True)
class KnowledgeDocument:
    file_id: str
    file_name: str
    file_type: str
    extracted_text: str


async def get_session_files(
    session_id: str,
    user_id: str,
    db: AsyncSession,
    file_ids: Optional[Sequence[str]] = None,
) -> List[KnowledgeDocument]:
    """Active files owned by ``user_id`` attached to the session or listed explicitly."""
    conditions = [KnowledgeFile.session_id == session_id]
    if file_ids:
        conditions.append(KnowledgeFile.id.in_(list(file_ids)))

    result = await db.execute(
        select(KnowledgeFile)
        .where(
            KnowledgeFile.user_id == user_id,
            KnowledgeFile.is_active.is_(True),
            or_(*conditions),
        )
        .order_by(KnowledgeFile.created_at.asc(), KnowledgeFile.id.asc())
    )
    return [
        KnowledgeDocument(
            file_id=row.id,
            file_name=row.file_name,
            file_type=row.file_type,
            extracted_text=row.extracted_text or "",
        )
        for row in result.scalars().all()
    ]
