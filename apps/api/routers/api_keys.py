"""User-owned upstream API keys (free_user_key mode)."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_current_user
from routers.http_errors import to_http_exception
from routers.rate_limit import rate_limit
from services.credential_pool import add_user_api_key, delete_user_key, list_user_keys
from services.errors import GatewayError

router = APIRouter()
logger = logging.getLogger(__name__)


class AddApiKeyRequest(BaseModel):
    api_key: str = Field(min_length=1, max_length=512)


@router.get("")
async def list_keys(
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {"keys": await list_user_keys(auth.user_id, db)}


@router.post("", status_code=201)
async def add_key(
    request: AddApiKeyRequest,
    _rate_limit: None = Depends(rate_limit("api_key_submit", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        key = await add_user_api_key(auth.user_id, request.api_key, db)
    except GatewayError as exc:
        raise to_http_exception(exc) from exc
    return {"ok": True, "key": key}


@router.delete("/{credential_id}")
async def delete_key(
    credential_id: str,
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not await delete_user_key(auth.user_id, credential_id, db):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"ok": True}
