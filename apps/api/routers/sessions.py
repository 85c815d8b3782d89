"""Extension session management."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.enums import AnswerMode, RequestMode
from routers.auth_scope import AuthContext, get_current_user
from routers.http_errors import to_http_exception
from services.errors import GatewayError
from services.extension_sessions import create_session, deactivate_session, list_sessions

router = APIRouter()


class CreateSessionRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    request_mode: RequestMode = RequestMode.FREE_POOL
    answer_mode: AnswerMode = AnswerMode.SHORT
    provider: Optional[str] = Field(default=None, max_length=32)
    model: Optional[str] = Field(default=None, max_length=128)
    use_custom_prompt: bool = False
    system_prompt: Optional[str] = Field(default=None, max_length=20000)
    knowledge_context: Optional[str] = None
    knowledge_file_ids: List[str] = Field(default_factory=list)


@router.get("")
async def list_all(
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {"sessions": await list_sessions(auth.user_id, db)}


@router.post("", status_code=201)
async def create(
    request: CreateSessionRequest,
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await create_session(auth.user_id, db, **request.model_dump())


@router.post("/{session_id}/deactivate")
async def deactivate(
    session_id: str,
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await deactivate_session(auth.user_id, session_id, db)
    except GatewayError as exc:
        raise to_http_exception(exc) from exc
