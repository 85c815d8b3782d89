"""Billing router: balance snapshot, balance→credit exchange and ledger history."""

from __future__ import annotations

from decimal import Decimal
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_current_user
from routers.http_errors import to_http_exception
from routers.rate_limit import rate_limit
from services.errors import GatewayError
from services.ledger import exchange_balance_to_credits, get_balance, get_exchange_rate, get_transaction_history

router = APIRouter()
logger = logging.getLogger(__name__)


class ExchangeRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)


@router.get("/balance")
async def balance_summary(
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        snapshot = await get_balance(auth.user_id, db)
    except GatewayError as exc:
        raise to_http_exception(exc) from exc
    return snapshot.as_dict()


@router.get("/exchange")
async def exchange_rate(db: AsyncSession = Depends(get_db)):
    rate = await get_exchange_rate(db)
    if rate is None:
        raise HTTPException(status_code=503, detail="Exchange rate not configured")
    return {"balance_per_credit": str(rate), "minimum_amount": str(rate)}


@router.post("/exchange")
async def exchange(
    request: ExchangeRequest,
    _rate_limit: None = Depends(rate_limit("billing_exchange", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await exchange_balance_to_credits(auth.user_id, request.amount, db)
        snapshot = await get_balance(auth.user_id, db)
    except GatewayError as exc:
        raise to_http_exception(exc) from exc

    return {
        "ok": True,
        "credits_received": result.credits_received,
        "balance_debited": str(result.balance_debited),
        "remainder": str(result.remainder),
        "rate": str(result.rate),
        "credits": snapshot.credits,
        "balance": str(snapshot.balance),
    }


@router.get("/transactions")
async def transactions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_transaction_history(auth.user_id, db, limit=limit, offset=offset)
