"""Administrator endpoints: house keys, vouchers, user ledger corrections and system configuration."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.enums import CredentialStatus, DiscountType, VoucherType
from routers.auth_scope import AuthContext, require_admin
from routers.http_errors import to_http_exception
from services.credential_pool import add_house_api_key, delete_house_key, list_house_keys, update_house_key
from services.errors import GatewayError, LedgerConsistencyError
from services.ledger import ADJUST_ADD, ADJUST_DEDUCT, adjust_balance, adjust_credits, to_money
from services.system_config import BALANCE_TO_CREDIT_RATE_KEY, set_config_value
from services.vouchers import (
    create_voucher,
    deactivate_voucher,
    list_voucher_redemptions,
    seed_default_vouchers,
    voucher_view,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class HouseKeyRequest(BaseModel):
    api_key: str = Field(min_length=1, max_length=512)
    priority: Optional[int] = Field(default=None, ge=0, le=1000)


class HouseKeyUpdateRequest(BaseModel):
    priority: Optional[int] = Field(default=None, ge=0, le=1000)
    status: Optional[CredentialStatus] = None


class CreditAdjustRequest(BaseModel):
    amount: int = Field(gt=0)
    type: str = Field(pattern=f"^({ADJUST_ADD}|{ADJUST_DEDUCT})$")
    reason: str = Field(min_length=1, max_length=500)


class BalanceAdjustRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    type: str = Field(pattern=f"^({ADJUST_ADD}|{ADJUST_DEDUCT})$")
    reason: str = Field(min_length=1, max_length=500)


class CreateVoucherRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=120)
    type: VoucherType
    discount_type: DiscountType = DiscountType.FIXED
    value: Decimal = Field(default=Decimal("0"), ge=0, max_digits=14, decimal_places=2)
    description: Optional[str] = None
    min_amount: Optional[Decimal] = Field(default=None, ge=0)
    max_discount: Optional[Decimal] = Field(default=None, ge=0)
    credit_bonus: Optional[int] = Field(default=None, ge=0)
    balance_bonus: Optional[Decimal] = Field(default=None, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    allow_multiple_use_per_user: bool = False
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ConfigValueRequest(BaseModel):
    value: str = Field(min_length=1, max_length=2000)
    description: Optional[str] = None


@router.get("/house-keys")
async def house_keys(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return {"keys": await list_house_keys(db)}


@router.post("/house-keys", status_code=201)
async def add_house_key(
    request: HouseKeyRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        key = await add_house_api_key(request.api_key, db, priority=request.priority)
    except GatewayError as exc:
        raise to_http_exception(exc) from exc
    logger.info("Admin %s added house key %s", admin.user_id, key["id"])
    return {"ok": True, "key": key}


@router.patch("/house-keys/{key_id}")
async def patch_house_key(
    key_id: str,
    request: HouseKeyUpdateRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if request.priority is None and request.status is None:
        raise HTTPException(status_code=400, detail="Nothing to update")
    try:
        key = await update_house_key(key_id, db, priority=request.priority, status=request.status)
    except GatewayError as exc:
        raise to_http_exception(exc) from exc
    logger.info("Admin %s updated house key %s", admin.user_id, key_id)
    return {"ok": True, "key": key}


@router.delete("/house-keys/{key_id}")
async def remove_house_key(
    key_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if not await delete_house_key(key_id, db):
        raise HTTPException(status_code=404, detail="API key not found")
    logger.info("Admin %s deleted house key %s", admin.user_id, key_id)
    return {"ok": True}


@router.post("/vouchers", status_code=201)
async def add_voucher(
    request: CreateVoucherRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    fields = request.model_dump()
    try:
        voucher = await create_voucher(
            fields.pop("code"),
            fields.pop("name"),
            fields.pop("type"),
            db,
            **fields,
        )
    except GatewayError as exc:
        raise to_http_exception(exc) from exc
    logger.info("Admin %s created voucher %s", admin.user_id, voucher.code)
    return voucher_view(voucher)


@router.post("/vouchers/seed")
async def seed_vouchers(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return {"created": await seed_default_vouchers(db)}


@router.post("/vouchers/{voucher_id}/deactivate")
async def deactivate(
    voucher_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        voucher = await deactivate_voucher(voucher_id, db)
    except GatewayError as exc:
        raise to_http_exception(exc) from exc
    return voucher_view(voucher)


@router.put("/config/{key}")
async def put_config(
    key: str,
    request: ConfigValueRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if key == BALANCE_TO_CREDIT_RATE_KEY:
        try:
            rate = Decimal(request.value.strip())
        except InvalidOperation as exc:
            raise HTTPException(status_code=400, detail="Exchange rate must be a number") from exc
        if not rate.is_finite() or rate <= 0:
            raise HTTPException(status_code=400, detail="Exchange rate must be greater than zero")

    row = await set_config_value(key, request.value.strip(), db, description=request.description)
    logger.info("Admin %s set config %s", admin.user_id, key)
    return {"key": row.key, "value": row.value, "description": row.description}


@router.get("/vouchers/{voucher_id}/redemptions")
async def voucher_redemptions(
    voucher_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await list_voucher_redemptions(voucher_id, db, limit=limit, offset=offset)
    except GatewayError as exc:
        raise to_http_exception(exc) from exc


def _adjustment_error(exc: Exception) -> HTTPException:
    # Refused deductions answer 400 here, not 402.
    if isinstance(exc, LedgerConsistencyError):
        return HTTPException(status_code=400, detail=exc.user_message)
    if isinstance(exc, GatewayError):
        return to_http_exception(exc)
    return HTTPException(status_code=400, detail=str(exc))


@router.post("/users/{user_id}/credits-adjust")
async def credits_adjust(
    user_id: str,
    request: CreditAdjustRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        entry = await adjust_credits(
            user_id,
            request.amount,
            request.type,
            request.reason,
            db,
            admin_label=admin.user_id,
        )
    except (GatewayError, ValueError) as exc:
        raise _adjustment_error(exc) from exc
    logger.info("Admin %s %s %s credits for user %s", admin.user_id, request.type, request.amount, user_id)
    return {"ok": True, "transaction_id": entry.id, "credits": entry.credits, "description": entry.description}


@router.post("/users/{user_id}/balance-adjust")
async def balance_adjust(
    user_id: str,
    request: BalanceAdjustRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        entry = await adjust_balance(
            user_id,
            request.amount,
            request.type,
            request.reason,
            db,
            admin_label=admin.user_id,
        )
    except (GatewayError, ValueError) as exc:
        raise _adjustment_error(exc) from exc
    logger.info("Admin %s %s %s balance for user %s", admin.user_id, request.type, request.amount, user_id)
    return {
        "ok": True,
        "transaction_id": entry.id,
        "amount": str(to_money(entry.amount)),
        "description": entry.description,
    }
