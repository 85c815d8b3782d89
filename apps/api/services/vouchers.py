"""Promotional voucher validation, redemption and administration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from models.enums import DiscountType, LedgerEntryType, VoucherType
from models.user import User
from models.voucher import Voucher, VoucherRedemption
from services.errors import (
    ConfigurationError,
    DuplicateVoucherError,
    VoucherError,
    VoucherNotRedeemableError,
)
from services.ledger import Money, post_entry, to_money
from services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

DEFAULT_VOUCHERS: List[Dict[str, Any]] = [
    {
        "code": "WELCOME10",
        "name": "Welcome Bonus",
        "description": "10 bonus credits for new users",
        "type": VoucherType.CREDIT.value,
        "discount_type": DiscountType.FIXED.value,
        "value": 0,
        "credit_bonus": 10,
        "max_uses": 1000,
        "valid_days": 90,
    },
    {
        "code": "TOPUP50K",
        "name": "Top-up Discount 50%",
        "description": "50% off balance top-ups of at least 100,000",
        "type": VoucherType.BALANCE.value,
        "discount_type": DiscountType.PERCENTAGE.value,
        "value": 50,
        "min_amount": 100000,
        "max_discount": 50000,
        "max_uses": 100,
        "valid_days": 30,
    },
    {
        "code": "CREDIT20",
        "name": "Credit Bonus 20",
        "description": "20 free credits on the first top-up",
        "type": VoucherType.CREDIT.value,
        "discount_type": DiscountType.FIXED.value,
        "value": 0,
        "credit_bonus": 20,
        "max_uses": 1,
    },
]


@dataclass
class VoucherValidation:
    valid: bool
    error: Optional[str] = None
    voucher: Optional[Voucher] = None
    discount_amount: Decimal = ZERO
    credit_bonus: int = 0
    balance_bonus: Decimal = ZERO

    def as_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "error": self.error,
            "voucher": voucher_view(self.voucher) if self.voucher is not None else None,
            "discount_amount": str(self.discount_amount),
            "credit_bonus": self.credit_bonus,
            "balance_bonus": str(self.balance_bonus),
        }


@dataclass(frozen=True)
class RedemptionResult:
    voucher_name: str
    credits_added: int
    balance_added: Decimal


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _window_error(voucher: Voucher, now: datetime) -> Optional[str]:
    start = _as_utc(voucher.start_date)
    end = _as_utc(voucher.end_date)
    if start is not None and now < start:
        return "Voucher not yet valid"
    if end is not None and now > end:
        return "Voucher has expired"
    return None


def _exhausted(voucher: Voucher) -> bool:
    return voucher.max_uses is not None and int(voucher.used_count or 0) >= int(voucher.max_uses)


def _credit_bonus(voucher: Voucher) -> int:
    return int(voucher.credit_bonus or 0)


def _balance_bonus(voucher: Voucher) -> Decimal:
    return to_money(voucher.balance_bonus or 0)


def calculate_discount(voucher: Voucher, amount: Money) -> Decimal:
    value = to_money(voucher.value or 0)
    if voucher.discount_type == DiscountType.PERCENTAGE.value:
        discount = to_money(to_money(amount) * value / Decimal("100"))
        if voucher.max_discount is not None:
            discount = min(discount, to_money(voucher.max_discount))
        return discount
    if voucher.discount_type == DiscountType.FIXED.value:
        return value
    return ZERO


async def _find_voucher(code: str, db: AsyncSession) -> Optional[Voucher]:
    result = await db.execute(
        select(Voucher).where(Voucher.code == normalize_code(code)).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _has_redeemed(voucher_id: str, user_id: str, db: AsyncSession) -> bool:
    result = await db.execute(
        select(VoucherRedemption.id)
        .where(VoucherRedemption.voucher_id == voucher_id, VoucherRedemption.user_id == user_id)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def validate_voucher(
    code: str,
    user_id: str,
    amount: Money,
    transaction_type: VoucherType,
    db: AsyncSession,
) -> VoucherValidation:
    """Side-effect free check; the first failing rule wins."""
    voucher = await _find_voucher(code, db)
    if voucher is None:
        return VoucherValidation(False, "Voucher not found")
    if not voucher.is_active:
        return VoucherValidation(False, "Voucher is not active")

    window_error = _window_error(voucher, _now())
    if window_error:
        return VoucherValidation(False, window_error)

    transaction_type = VoucherType(transaction_type)
    if voucher.type != transaction_type.value:
        return VoucherValidation(False, f"Voucher is only valid for {voucher.type} transactions")

    if voucher.min_amount is not None and to_money(amount) < to_money(voucher.min_amount):
        return VoucherValidation(False, f"Minimum amount is {to_money(voucher.min_amount):,}")

    if _exhausted(voucher):
        return VoucherValidation(False, "Voucher has reached maximum usage")

    if not voucher.allow_multiple_use_per_user and await _has_redeemed(voucher.id, user_id, db):
        return VoucherValidation(False, "You have already used this voucher")

    return VoucherValidation(
        True,
        voucher=voucher,
        discount_amount=calculate_discount(voucher, amount),
        credit_bonus=_credit_bonus(voucher),
        balance_bonus=_balance_bonus(voucher),
    )


async def record_redemption(
    session: AsyncSession,
    voucher: Voucher,
    user_id: str,
    *,
    discount_amount: Money = 0,
    credit_bonus: int = 0,
    balance_bonus: Money = 0,
) -> VoucherRedemption:
    """Cap-guarded ``used_count`` increment plus the redemption row.

    Must run inside an open ``UnitOfWork``. The increment is a single
    conditional UPDATE, so concurrent redemptions can never overshoot
    ``max_uses``. It also holds the voucher row until commit, so the
    per-user check that follows sees every redemption committed before it.
    On any rejection nothing is left written.
    """
    result = await session.execute(
        update(Voucher)
        .where(
            Voucher.id == voucher.id,
            or_(Voucher.max_uses.is_(None), Voucher.used_count < Voucher.max_uses),
        )
        .values(used_count=Voucher.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise VoucherError("Voucher has reached maximum usage")

    single_use = not voucher.allow_multiple_use_per_user
    if single_use and await _has_redeemed(voucher.id, user_id, session):
        await session.execute(
            update(Voucher)
            .where(Voucher.id == voucher.id)
            .values(used_count=Voucher.used_count - 1)
            .execution_options(synchronize_session=False)
        )
        raise VoucherError("You have already used this voucher")

    redemption = VoucherRedemption(
        voucher_id=voucher.id,
        user_id=user_id,
        per_user_key=user_id if single_use else None,
        discount_amount=to_money(discount_amount),
        credits_bonus=int(credit_bonus) or None,
        balance_bonus=to_money(balance_bonus) or None,
    )
    session.add(redemption)
    await session.flush()
    return redemption


async def redeem_voucher(code: str, user_id: str, db: AsyncSession) -> RedemptionResult:
    """Standalone redemption: bonus vouchers only, all writes in one unit."""
    try:
        async with UnitOfWork(db) as uow:
            session = uow.session
            voucher = await _find_voucher(code, session)
            if voucher is None:
                raise VoucherError("Voucher not found")
            if not voucher.is_active:
                raise VoucherError("Voucher is not active")
            window_error = _window_error(voucher, _now())
            if window_error:
                raise VoucherError(window_error)

            credits = _credit_bonus(voucher)
            balance = _balance_bonus(voucher)
            if credits <= 0 and balance <= 0:
                raise VoucherNotRedeemableError()

            if _exhausted(voucher):
                raise VoucherError("Voucher has reached maximum usage")

            await record_redemption(session, voucher, user_id, credit_bonus=credits, balance_bonus=balance)

            if credits > 0:
                await post_entry(
                    session,
                    user_id,
                    entry_type=LedgerEntryType.VOUCHER_REDEEM,
                    credits=credits,
                    description=f"Voucher {voucher.code}: {voucher.name}",
                    voucher_id=voucher.id,
                )
            if balance > 0:
                await post_entry(
                    session,
                    user_id,
                    entry_type=LedgerEntryType.VOUCHER_REDEEM,
                    amount=balance,
                    description=f"Voucher {voucher.code}: {voucher.name}",
                    voucher_id=voucher.id,
                )
            voucher_name = voucher.name
            voucher_code = voucher.code
    except IntegrityError as exc:
        # Unique (voucher_id, per_user_key) index.
        raise VoucherError("You have already used this voucher") from exc

    logger.info("voucher redeemed code=%s user=%s credits=%s balance=%s", voucher_code, user_id, credits, balance)
    return RedemptionResult(voucher_name=voucher_name, credits_added=credits, balance_added=balance)


def voucher_view(voucher: Voucher) -> Dict[str, Any]:
    return {
        "id": voucher.id,
        "code": voucher.code,
        "name": voucher.name,
        "description": voucher.description,
        "type": voucher.type,
        "discount_type": voucher.discount_type,
        "value": str(to_money(voucher.value or 0)),
        "min_amount": str(to_money(voucher.min_amount)) if voucher.min_amount is not None else None,
        "max_discount": str(to_money(voucher.max_discount)) if voucher.max_discount is not None else None,
        "credit_bonus": voucher.credit_bonus,
        "balance_bonus": str(to_money(voucher.balance_bonus)) if voucher.balance_bonus is not None else None,
        "max_uses": voucher.max_uses,
        "used_count": voucher.used_count,
        "allow_multiple_use_per_user": bool(voucher.allow_multiple_use_per_user),
        "is_active": bool(voucher.is_active),
        "start_date": voucher.start_date.isoformat() if voucher.start_date else None,
        "end_date": voucher.end_date.isoformat() if voucher.end_date else None,
    }


async def create_voucher(
    code: str,
    name: str,
    voucher_type: VoucherType,
    db: AsyncSession,
    discount_type: DiscountType = DiscountType.FIXED,
    value: Money = 0,
    description: Optional[str] = None,
    min_amount: Optional[Money] = None,
    max_discount: Optional[Money] = None,
    credit_bonus: Optional[int] = None,
    balance_bonus: Optional[Money] = None,
    max_uses: Optional[int] = None,
    allow_multiple_use_per_user: bool = False,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Voucher:
    normalized = normalize_code(code)
    if not normalized:
        raise VoucherError("Voucher code is required")
    voucher_type = VoucherType(voucher_type)
    discount_type = DiscountType(discount_type)
    amount = to_money(value)
    if amount < 0:
        raise VoucherError("Voucher value cannot be negative")
    if discount_type == DiscountType.PERCENTAGE and amount > 100:
        raise VoucherError("Percentage discount cannot exceed 100")
    if max_uses is not None and int(max_uses) <= 0:
        raise VoucherError("max_uses must be greater than 0")
    if start_date and end_date and _as_utc(end_date) <= _as_utc(start_date):
        raise VoucherError("end_date must be after start_date")

    if await _find_voucher(normalized, db) is not None:
        raise DuplicateVoucherError()

    voucher = Voucher(
        code=normalized,
        name=name.strip(),
        description=description,
        type=voucher_type.value,
        discount_type=discount_type.value,
        value=amount,
        min_amount=to_money(min_amount) if min_amount is not None else None,
        max_discount=to_money(max_discount) if max_discount is not None else None,
        credit_bonus=int(credit_bonus) if credit_bonus else None,
        balance_bonus=to_money(balance_bonus) if balance_bonus else None,
        max_uses=int(max_uses) if max_uses is not None else None,
        used_count=0,
        allow_multiple_use_per_user=bool(allow_multiple_use_per_user),
        is_active=True,
        start_date=start_date or _now(),
        end_date=end_date,
    )
    db.add(voucher)
    await db.commit()
    await db.refresh(voucher)
    logger.info("voucher created code=%s type=%s", voucher.code, voucher.type)
    return voucher


async def deactivate_voucher(voucher_id: str, db: AsyncSession) -> Voucher:
    voucher = await db.get(Voucher, voucher_id)
    if voucher is None:
        raise ConfigurationError("Voucher not found")
    voucher.is_active = False
    await db.commit()
    await db.refresh(voucher)
    logger.info("voucher deactivated code=%s", voucher.code)
    return voucher


async def get_active_vouchers(db: AsyncSession, voucher_type: Optional[VoucherType] = None) -> List[Dict[str, Any]]:
    query = select(Voucher).where(Voucher.is_active.is_(True))
    if voucher_type is not None:
        query = query.where(Voucher.type == VoucherType(voucher_type).value)
    result = await db.execute(query.order_by(Voucher.created_at.desc(), Voucher.code.asc()))

    now = _now()
    return [
        voucher_view(voucher)
        for voucher in result.scalars().all()
        if _window_error(voucher, now) is None and not _exhausted(voucher)
    ]


async def get_user_voucher_history(user_id: str, db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(VoucherRedemption)
        .options(selectinload(VoucherRedemption.voucher))
        .where(VoucherRedemption.user_id == user_id)
        .order_by(VoucherRedemption.used_at.desc(), VoucherRedemption.id.desc())
    )
    history = []
    for redemption in result.scalars().all():
        voucher = redemption.voucher
        history.append(
            {
                "id": redemption.id,
                "voucher": {
                    "code": voucher.code,
                    "name": voucher.name,
                    "description": voucher.description,
                },
                "discount_amount": str(to_money(redemption.discount_amount or 0)),
                "credits_bonus": redemption.credits_bonus,
                "balance_bonus": str(to_money(redemption.balance_bonus)) if redemption.balance_bonus is not None else None,
                "used_at": redemption.used_at.isoformat() if redemption.used_at else None,
            }
        )
    return history


async def count_redemptions(voucher_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(VoucherRedemption.id)).where(VoucherRedemption.voucher_id == voucher_id)
    )
    return int(result.scalar() or 0)


async def list_voucher_redemptions(
    voucher_id: str,
    db: AsyncSession,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    """Newest-first page of one voucher's redemptions, with the redeeming user."""
    page_size = min(max(int(limit), 1), 200)
    skip = max(int(offset), 0)
    voucher = await db.get(Voucher, voucher_id)
    if voucher is None:
        raise ConfigurationError("Voucher not found")

    result = await db.execute(
        select(VoucherRedemption, User.email, User.name)
        .join(User, User.id == VoucherRedemption.user_id)
        .where(VoucherRedemption.voucher_id == voucher_id)
        .order_by(VoucherRedemption.used_at.desc(), VoucherRedemption.id.desc())
        .offset(skip)
        .limit(page_size)
    )
    redemptions = [
        {
            "id": redemption.id,
            "user": {"id": redemption.user_id, "email": email, "name": name},
            "discount_amount": str(to_money(redemption.discount_amount or 0)),
            "credits_bonus": redemption.credits_bonus,
            "balance_bonus": str(to_money(redemption.balance_bonus)) if redemption.balance_bonus is not None else None,
            "used_at": redemption.used_at.isoformat() if redemption.used_at else None,
        }
        for redemption, email, name in result.all()
    ]
    return {
        "voucher": voucher_view(voucher),
        "redemptions": redemptions,
        "total": await count_redemptions(voucher_id, db),
        "limit": page_size,
        "offset": skip,
    }


async def seed_default_vouchers(db: AsyncSession) -> List[str]:
    """Create the launch vouchers that do not exist yet; returns the created codes."""
    created = []
    for template in DEFAULT_VOUCHERS:
        if await _find_voucher(template["code"], db) is not None:
            continue
        fields = dict(template)
        valid_days = fields.pop("valid_days", None)
        start = _now()
        await create_voucher(
            fields.pop("code"),
            fields.pop("name"),
            fields.pop("type"),
            db,
            start_date=start,
            end_date=start + timedelta(days=valid_days) if valid_days else None,
            **fields,
        )
        created.append(template["code"])
    return created
