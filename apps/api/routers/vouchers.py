"""Voucher validation and direct redemption."""

from __future__ import annotations

from decimal import Decimal
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.enums import VoucherType
from routers.auth_scope import AuthContext, get_current_user
from routers.http_errors import to_http_exception
from routers.rate_limit import rate_limit
from services.errors import GatewayError
from services.ledger import get_balance
from services.vouchers import get_active_vouchers, get_user_voucher_history, redeem_voucher, validate_voucher

router = APIRouter()
logger = logging.getLogger(__name__)


class ValidateVoucherRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(ge=0, max_digits=14, decimal_places=2)
    type: VoucherType


class RedeemVoucherRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


@router.post("/validate")
async def validate(
    request: ValidateVoucherRequest,
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    validation = await validate_voucher(request.code, auth.user_id, request.amount, request.type, db)
    payload = validation.as_dict()
    if validation.valid:
        payload["final_amount"] = str(max(request.amount - validation.discount_amount, Decimal("0")))
    return payload


@router.post("/redeem")
async def redeem(
    request: RedeemVoucherRequest,
    _rate_limit: None = Depends(rate_limit("voucher_redeem", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await redeem_voucher(request.code, auth.user_id, db)
        snapshot = await get_balance(auth.user_id, db)
    except GatewayError as exc:
        raise to_http_exception(exc) from exc

    return {
        "ok": True,
        "voucher_name": result.voucher_name,
        "credits_added": result.credits_added,
        "balance_added": str(result.balance_added),
        "credits": snapshot.credits,
        "balance": str(snapshot.balance),
    }


@router.get("/active")
async def active(
    type: Optional[VoucherType] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    return {"vouchers": await get_active_vouchers(db, type)}


@router.get("/history")
async def history(
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {"redemptions": await get_user_voucher_history(auth.user_id, db)}
