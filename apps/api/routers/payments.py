"""Payment creation and the internal confirmation hook."""

from __future__ import annotations

from decimal import Decimal
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.enums import VoucherType
from routers.auth_scope import AuthContext, get_current_user
from routers.http_errors import to_http_exception
from routers.rate_limit import rate_limit
from services.errors import GatewayError
from services.payments import confirm_payment, create_payment, payment_view

router = APIRouter()
logger = logging.getLogger(__name__)


class CreatePaymentRequest(BaseModel):
    type: VoucherType
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    credits: Optional[int] = Field(default=None, ge=1, le=100000)
    method: Optional[str] = Field(default=None, max_length=32)
    voucher_code: Optional[str] = Field(default=None, max_length=64)


class ConfirmPaymentRequest(BaseModel):
    succeeded: bool = True


def _require_webhook_secret(x_payment_secret: Optional[str]) -> None:
    expected = settings.PAYMENT_WEBHOOK_SECRET
    if not expected:
        raise HTTPException(status_code=503, detail="Payment confirmation is not configured.")
    if not x_payment_secret or not hmac.compare_digest(x_payment_secret, expected):
        raise HTTPException(status_code=403, detail="Invalid payment secret.")


@router.post("", status_code=201)
async def create(
    request: CreatePaymentRequest,
    _rate_limit: None = Depends(rate_limit("payment_create", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        payment = await create_payment(
            auth.user_id,
            request.type,
            request.amount,
            db,
            credit_amount=request.credits,
            method=request.method,
            voucher_code=request.voucher_code,
        )
    except GatewayError as exc:
        raise to_http_exception(exc) from exc
    return payment_view(payment)


@router.post("/{payment_id}/confirm")
async def confirm(
    payment_id: str,
    request: Optional[ConfirmPaymentRequest] = None,
    x_payment_secret: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    _require_webhook_secret(x_payment_secret)
    try:
        return await confirm_payment(payment_id, db, succeeded=request.succeeded if request else True)
    except GatewayError as exc:
        raise to_http_exception(exc) from exc
