"""Credit/balance ledger: atomic counter mutations plus an append-only entry log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any, Dict, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from config import settings
from models.api_credential import ApiCredential
from models.credit_transaction import CreditTransaction
from models.enums import CredentialStatus, LedgerEntryType, RequestMode
from models.user import User
from services.errors import (
    ConfigurationError,
    EntitlementError,
    InsufficientBalanceError,
    InsufficientCreditsError,
)
from services.system_config import BALANCE_TO_CREDIT_RATE_KEY, get_decimal_config
from services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
Money = Union[Decimal, int, float, str]

ADJUST_ADD = "add"
ADJUST_DEDUCT = "deduct"


@dataclass(frozen=True)
class BalanceSnapshot:
    credits: int
    balance: Decimal
    subscription_status: str
    subscription_expiry: Optional[datetime]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "credits": self.credits,
            "balance": str(self.balance),
            "subscription_status": self.subscription_status,
            "subscription_expiry": self.subscription_expiry.isoformat() if self.subscription_expiry else None,
        }


@dataclass(frozen=True)
class Entitlement:
    allowed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class ExchangeResult:
    credits_received: int
    balance_debited: Decimal
    remainder: Decimal
    rate: Decimal


def to_money(value: Money) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _entry(
    user_id: str,
    *,
    entry_type: LedgerEntryType,
    description: str,
    credits: int = 0,
    amount: Decimal = Decimal("0"),
    payment_id: Optional[str] = None,
    voucher_id: Optional[str] = None,
) -> CreditTransaction:
    return CreditTransaction(
        user_id=user_id,
        type=entry_type.value,
        credits=int(credits),
        amount=amount,
        description=description,
        status="completed",
        payment_id=payment_id,
        voucher_id=voucher_id,
    )


async def _require_user(user_id: str, db: AsyncSession) -> User:
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise ConfigurationError("User not found")
    return user


async def get_balance(user_id: str, db: AsyncSession) -> BalanceSnapshot:
    user = await _require_user(user_id, db)
    return BalanceSnapshot(
        credits=int(user.credits or 0),
        balance=to_money(user.balance or 0),
        subscription_status=user.subscription_status,
        subscription_expiry=user.subscription_expiry,
    )


async def can_make_request(user_id: str, mode: RequestMode, db: AsyncSession) -> Entitlement:
    """Tier entitlement check; performs no writes."""
    try:
        snapshot = await get_balance(user_id, db)
    except ConfigurationError:
        return Entitlement(False, "User not found")

    mode = RequestMode(mode)
    if mode == RequestMode.FREE_USER_KEY:
        result = await db.execute(
            select(func.count(ApiCredential.id)).where(
                ApiCredential.user_id == user_id,
                ApiCredential.status.in_([CredentialStatus.ACTIVE.value, CredentialStatus.RATE_LIMITED.value]),
            )
        )
        if not int(result.scalar() or 0):
            return Entitlement(False, "No active Gemini API key found. Please add your API key in settings.")
        return Entitlement(True)
    if mode == RequestMode.FREE_POOL:
        if snapshot.balance > 0 or snapshot.credits >= 1:
            return Entitlement(True)
        return Entitlement(False, "Insufficient balance. Please top-up to use free pool mode.")
    if mode == RequestMode.PREMIUM:
        if snapshot.credits >= 1:
            return Entitlement(True)
        return Entitlement(False, "Insufficient credits. Please purchase credits to use premium models.")
    raise ValueError(f"Unhandled request mode: {mode!r}")


async def deduct_credits(user_id: str, credits: int, description: str, db: AsyncSession) -> CreditTransaction:
    """Debit ``credits`` or raise with nothing written.

    The sufficiency check and the decrement are one conditional UPDATE, so two
    concurrent deductions can never both pass against the same counter.
    """
    debit = int(credits)
    if debit <= 0:
        raise ValueError("credits must be greater than 0")

    async with UnitOfWork(db) as uow:
        result = await uow.session.execute(
            update(User)
            .where(User.id == user_id, User.credits >= debit)
            .values(credits=User.credits - debit)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            await _require_user(user_id, uow.session)
            raise InsufficientCreditsError()
        entry = _entry(user_id, entry_type=LedgerEntryType.CREDIT_USED, credits=-debit, description=description)
        uow.session.add(entry)

    logger.info("ledger debit user=%s credits=%s entry=%s", user_id, debit, entry.id)
    return entry


async def post_entry(
    session: AsyncSession,
    user_id: str,
    *,
    entry_type: LedgerEntryType,
    description: str,
    credits: int = 0,
    amount: Money = 0,
    payment_id: Optional[str] = None,
    voucher_id: Optional[str] = None,
) -> CreditTransaction:
    """Increment the user's counters and stage the matching entry.

    Does not commit; callers run it inside an open ``UnitOfWork`` so the
    increment lands together with whatever else that unit writes.
    """
    value = to_money(amount)
    values: Dict[str, Any] = {}
    if credits:
        values["credits"] = User.credits + int(credits)
    if value:
        values["balance"] = User.balance + value
    if not values:
        raise ValueError("ledger entry must move credits or balance")

    result = await session.execute(
        update(User).where(User.id == user_id).values(**values).execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise ConfigurationError("User not found")
    entry = _entry(
        user_id,
        entry_type=entry_type,
        credits=int(credits),
        amount=value,
        description=description,
        payment_id=payment_id,
        voucher_id=voucher_id,
    )
    session.add(entry)
    return entry


async def add_credits(
    user_id: str,
    credits: int,
    description: str,
    db: AsyncSession,
    *,
    payment_id: Optional[str] = None,
    voucher_id: Optional[str] = None,
    entry_type: Optional[LedgerEntryType] = None,
) -> CreditTransaction:
    grant = int(credits)
    if grant <= 0:
        raise ValueError("credits must be greater than 0")
    if entry_type is None:
        if payment_id:
            entry_type = LedgerEntryType.CREDIT_PURCHASE
        elif voucher_id:
            entry_type = LedgerEntryType.VOUCHER_REDEEM
        else:
            entry_type = LedgerEntryType.CREDIT_BONUS

    async with UnitOfWork(db) as uow:
        entry = await post_entry(
            uow.session,
            user_id,
            entry_type=entry_type,
            credits=grant,
            description=description,
            payment_id=payment_id,
            voucher_id=voucher_id,
        )

    logger.info("ledger credit user=%s credits=%s type=%s", user_id, grant, entry_type.value)
    return entry


async def add_balance(
    user_id: str,
    amount: Money,
    description: str,
    db: AsyncSession,
    *,
    payment_id: Optional[str] = None,
    voucher_id: Optional[str] = None,
    entry_type: Optional[LedgerEntryType] = None,
) -> CreditTransaction:
    value = to_money(amount)
    if value <= 0:
        raise ValueError("amount must be greater than 0")
    if entry_type is None:
        entry_type = LedgerEntryType.VOUCHER_REDEEM if voucher_id and not payment_id else LedgerEntryType.BALANCE_TOPUP

    async with UnitOfWork(db) as uow:
        entry = await post_entry(
            uow.session,
            user_id,
            entry_type=entry_type,
            amount=value,
            description=description,
            payment_id=payment_id,
            voucher_id=voucher_id,
        )

    logger.info("ledger balance user=%s amount=%s type=%s", user_id, value, entry_type.value)
    return entry


async def get_exchange_rate(db: AsyncSession) -> Optional[Decimal]:
    """Balance units per credit; configured value first, settings default second."""
    rate = await get_decimal_config(BALANCE_TO_CREDIT_RATE_KEY, db)
    if rate is None:
        rate = Decimal(str(settings.DEFAULT_BALANCE_TO_CREDIT_RATE)) if settings.DEFAULT_BALANCE_TO_CREDIT_RATE else None
    if rate is None or rate <= 0:
        return None
    return rate


async def exchange_balance_to_credits(user_id: str, amount: Money, db: AsyncSession) -> ExchangeResult:
    """Convert ``amount`` of balance into floor(amount / rate) credits.

    The full amount is debited; two entries are written so each resource
    movement is auditable on its own.
    """
    value = to_money(amount)
    if value <= 0:
        raise EntitlementError("Exchange amount must be greater than zero.")

    rate = await get_exchange_rate(db)
    if rate is None:
        raise ConfigurationError("Exchange rate not configured")
    if value < rate:
        raise EntitlementError(f"Minimum exchange amount is {rate.normalize():f}.")

    credits = int(value // rate)
    remainder = value - (rate * credits)

    async with UnitOfWork(db) as uow:
        result = await uow.session.execute(
            update(User)
            .where(User.id == user_id, User.balance >= value)
            .values(balance=User.balance - value, credits=User.credits + credits)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            await _require_user(user_id, uow.session)
            raise InsufficientBalanceError("Insufficient balance for this exchange.")
        uow.session.add(
            _entry(
                user_id,
                entry_type=LedgerEntryType.EXCHANGE_DEBIT,
                amount=-value,
                description=f"Exchanged {value} balance to {credits} credits",
            )
        )
        uow.session.add(
            _entry(
                user_id,
                entry_type=LedgerEntryType.EXCHANGE_CREDIT,
                credits=credits,
                description=f"Received {credits} credits from balance exchange (rate {rate})",
            )
        )

    logger.info("ledger exchange user=%s amount=%s credits=%s rate=%s", user_id, value, credits, rate)
    return ExchangeResult(credits_received=credits, balance_debited=value, remainder=remainder, rate=rate)


def _adjust_direction(direction: str) -> str:
    value = str(direction or "").strip().lower()
    if value not in (ADJUST_ADD, ADJUST_DEDUCT):
        raise ValueError("type must be 'add' or 'deduct'")
    return value


def _require_reason(reason: Optional[str]) -> str:
    text = str(reason or "").strip()
    if not text:
        raise ValueError("Reason is required")
    return text


async def adjust_credits(
    user_id: str,
    credits: int,
    direction: str,
    reason: str,
    db: AsyncSession,
    *,
    admin_label: str = "admin",
) -> CreditTransaction:
    """Operator correction of a user's credit counter.

    A deduction is a conditional UPDATE like ``deduct_credits``; it never
    drives the counter below zero and writes nothing when refused.
    """
    value = int(credits)
    if value <= 0:
        raise ValueError("Amount must be greater than 0")
    direction = _adjust_direction(direction)
    note = _require_reason(reason)

    async with UnitOfWork(db) as uow:
        if direction == ADJUST_ADD:
            entry = await post_entry(
                uow.session,
                user_id,
                entry_type=LedgerEntryType.ADMIN_CREDIT_ADD,
                credits=value,
                description=f"Admin credit addition - {note} (by {admin_label})",
            )
        else:
            result = await uow.session.execute(
                update(User)
                .where(User.id == user_id, User.credits >= value)
                .values(credits=User.credits - value)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                await _require_user(user_id, uow.session)
                raise InsufficientCreditsError("Insufficient credits for deduction")
            entry = _entry(
                user_id,
                entry_type=LedgerEntryType.ADMIN_CREDIT_DEDUCT,
                credits=-value,
                description=f"Admin credit deduction - {note} (by {admin_label})",
            )
            uow.session.add(entry)
        user = await _require_user(user_id, uow.session)
        current = int(user.credits or 0)
        previous = current - entry.credits
        entry.description = f"{entry.description}. Previous: {previous}, New: {current}"

    logger.info("ledger admin %s user=%s credits=%s by=%s", direction, user_id, value, admin_label)
    return entry


async def adjust_balance(
    user_id: str,
    amount: Money,
    direction: str,
    reason: str,
    db: AsyncSession,
    *,
    admin_label: str = "admin",
) -> CreditTransaction:
    """Operator correction of a user's balance; deductions never go negative."""
    value = to_money(amount)
    if value <= 0:
        raise ValueError("Amount must be greater than 0")
    direction = _adjust_direction(direction)
    note = _require_reason(reason)

    async with UnitOfWork(db) as uow:
        if direction == ADJUST_ADD:
            entry = await post_entry(
                uow.session,
                user_id,
                entry_type=LedgerEntryType.ADMIN_BALANCE_ADD,
                amount=value,
                description=f"Admin balance addition - {note} (by {admin_label})",
            )
        else:
            result = await uow.session.execute(
                update(User)
                .where(User.id == user_id, User.balance >= value)
                .values(balance=User.balance - value)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                await _require_user(user_id, uow.session)
                raise InsufficientBalanceError("Insufficient balance for deduction")
            entry = _entry(
                user_id,
                entry_type=LedgerEntryType.ADMIN_BALANCE_DEDUCT,
                amount=-value,
                description=f"Admin balance deduction - {note} (by {admin_label})",
            )
            uow.session.add(entry)
        user = await _require_user(user_id, uow.session)
        current = to_money(user.balance or 0)
        previous = current - to_money(entry.amount)
        entry.description = f"{entry.description}. Previous: {previous}, New: {current}"

    logger.info("ledger admin %s user=%s amount=%s by=%s", direction, user_id, value, admin_label)
    return entry


def _entry_payload(entry: CreditTransaction) -> Dict[str, Any]:
    payment = entry.payment
    return {
        "id": entry.id,
        "type": entry.type,
        "credits": entry.credits,
        "amount": str(to_money(entry.amount or 0)),
        "description": entry.description,
        "status": entry.status,
        "voucher_id": entry.voucher_id,
        "payment": (
            {
                "id": payment.id,
                "amount": str(to_money(payment.amount or 0)),
                "method": payment.method,
                "status": payment.status,
            }
            if payment is not None
            else None
        ),
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_transaction_history(
    user_id: str,
    db: AsyncSession,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    """Newest-first page of ledger entries with payment linkage."""
    page_size = min(max(int(limit), 1), 200)
    skip = max(int(offset), 0)
    result = await db.execute(
        select(CreditTransaction)
        .options(selectinload(CreditTransaction.payment))
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .offset(skip)
        .limit(page_size)
    )
    total = await db.execute(select(func.count(CreditTransaction.id)).where(CreditTransaction.user_id == user_id))
    return {
        "transactions": [_entry_payload(entry) for entry in result.scalars().all()],
        "total": int(total.scalar() or 0),
        "limit": page_size,
        "offset": skip,
    }
