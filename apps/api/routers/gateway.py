"""Question-answering entry point used by the browser extension."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_current_user
from routers.rate_limit import rate_limit
from services.gateway import process_request
from services.prompt_composer import FewShotExample

router = APIRouter()
logger = logging.getLogger(__name__)


class FewShotExampleIn(BaseModel):
    question: str
    answer: str


class AskRequest(BaseModel):
    session_id: str = Field(min_length=1)
    question: str = Field(min_length=1, max_length=20000)
    few_shot_examples: Optional[List[FewShotExampleIn]] = Field(default=None, max_length=10)
    output_format: Optional[str] = Field(default=None, max_length=2000)


@router.post("/ask")
async def ask(
    request: AskRequest,
    _rate_limit: None = Depends(rate_limit("gateway_ask", limit=60, window_seconds=60)),
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    examples = [FewShotExample(question=item.question, answer=item.answer) for item in request.few_shot_examples or []]
    response = await process_request(
        auth.user_id,
        request.session_id,
        request.question,
        db,
        few_shot_examples=examples or None,
        output_format=request.output_format,
    )
    if not response.success:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": response.error, "request_id": response.request_id},
        )

    return {
        "success": True,
        "data": {
            "answer": response.answer,
            "request_id": response.request_id,
            "credits_deducted": response.credits_deducted,
            "cached": response.cached,
            "tokens_used": response.tokens_used,
            "input_tokens": response.input_tokens,
            "output_tokens": response.output_tokens,
        },
    }
