"""Payment records and the confirmation hook that funds the ledger."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Dict, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from models.enums import LedgerEntryType, PaymentStatus, VoucherType
from models.payment import Payment
from models.voucher import Voucher
from services.errors import ConfigurationError, EntitlementError, VoucherError
from services.ledger import Money, post_entry, to_money
from services.unit_of_work import UnitOfWork
from services.vouchers import record_redemption, validate_voucher

logger = logging.getLogger(__name__)

MIN_PAYMENT_AMOUNT = Decimal("10000")


def payment_view(payment: Payment) -> Dict[str, Any]:
    metadata = payment.metadata_json or {}
    return {
        "id": payment.id,
        "type": payment.type,
        "amount": str(to_money(payment.amount or 0)),
        "credit_amount": payment.credit_amount,
        "method": payment.method,
        "status": payment.status,
        "external_id": payment.external_id,
        "original_amount": metadata.get("original_amount"),
        "discount_amount": metadata.get("discount_amount", "0.00"),
        "credit_bonus": int(metadata.get("credit_bonus") or 0),
        "balance_bonus": metadata.get("balance_bonus", "0.00"),
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }


async def create_payment(
    user_id: str,
    payment_type: VoucherType,
    amount: Money,
    db: AsyncSession,
    credit_amount: Optional[int] = None,
    method: Optional[str] = None,
    voucher_code: Optional[str] = None,
) -> Payment:
    """Open a pending payment, pricing in any voucher discount up front."""
    payment_type = VoucherType(payment_type)
    original = to_money(amount)
    if original < MIN_PAYMENT_AMOUNT:
        raise EntitlementError(f"Minimum amount is {MIN_PAYMENT_AMOUNT:,}")
    if payment_type == VoucherType.CREDIT and not credit_amount:
        raise EntitlementError("Credit purchases must specify the number of credits")

    metadata: Dict[str, Any] = {
        "original_amount": str(original),
        "discount_amount": "0.00",
        "credit_bonus": 0,
        "balance_bonus": "0.00",
        "voucher_id": None,
    }
    if voucher_code:
        validation = await validate_voucher(voucher_code, user_id, original, payment_type, db)
        if not validation.valid:
            raise VoucherError(validation.error)
        metadata.update(
            voucher_id=validation.voucher.id,
            discount_amount=str(validation.discount_amount),
            credit_bonus=validation.credit_bonus,
            balance_bonus=str(validation.balance_bonus),
        )

    final_amount = max(original - to_money(metadata["discount_amount"]), Decimal("0.00"))
    payment = Payment(
        user_id=user_id,
        type=payment_type.value,
        amount=final_amount,
        credit_amount=int(credit_amount) if payment_type == VoucherType.CREDIT else None,
        method=method,
        status=PaymentStatus.PENDING.value,
        external_id=f"GENO-{uuid.uuid4().hex[:12].upper()}-{user_id[:8]}",
        metadata_json=metadata,
    )
    db.add(payment)
    await db.commit()
    await db.refresh(payment)
    logger.info("payment created id=%s user=%s type=%s amount=%s", payment.id, user_id, payment.type, final_amount)
    return payment


async def confirm_payment(payment_id: str, db: AsyncSession, succeeded: bool = True) -> Dict[str, Any]:
    """Apply a gateway's "payment succeeded" event exactly once.

    The pending→completed transition is a conditional UPDATE; a repeated
    callback finds no pending row and changes nothing.
    """
    async with UnitOfWork(db) as uow:
        session = uow.session
        payment = await session.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise ConfigurationError("Payment not found")

        target = PaymentStatus.COMPLETED if succeeded else PaymentStatus.FAILED
        transition = await session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(status=target.value, paid_at=datetime.now(timezone.utc) if succeeded else None)
            .execution_options(synchronize_session=False)
        )
        if not transition.rowcount:
            logger.info("payment %s already processed (status=%s)", payment_id, payment.status)
            return {"payment_id": payment_id, "status": payment.status, "processed": False}

        if not succeeded:
            logger.info("payment %s failed at the gateway", payment_id)
            return {"payment_id": payment_id, "status": target.value, "processed": True}

        metadata = payment.metadata_json or {}
        voucher_id = metadata.get("voucher_id")
        credit_bonus = int(metadata.get("credit_bonus") or 0)
        balance_bonus = to_money(metadata.get("balance_bonus") or 0)

        if payment.type == VoucherType.BALANCE.value:
            top_up = to_money(metadata.get("original_amount") or payment.amount)
            await post_entry(
                session,
                payment.user_id,
                entry_type=LedgerEntryType.BALANCE_TOPUP,
                amount=top_up,
                description="Balance top-up",
                payment_id=payment.id,
            )
        else:
            await post_entry(
                session,
                payment.user_id,
                entry_type=LedgerEntryType.CREDIT_PURCHASE,
                credits=int(payment.credit_amount or 0),
                description=f"Credit purchase ({payment.credit_amount} credits)",
                payment_id=payment.id,
            )

        if voucher_id:
            voucher = await session.get(Voucher, voucher_id)
            if voucher is None:
                raise ConfigurationError("Voucher not found")
            try:
                await record_redemption(
                    session,
                    voucher,
                    payment.user_id,
                    discount_amount=metadata.get("discount_amount") or 0,
                    credit_bonus=credit_bonus,
                    balance_bonus=balance_bonus,
                )
            except VoucherError as exc:
                # The price already included the discount; only the bonus is withheld.
                logger.warning(
                    "voucher %s rejected at settlement of payment %s (%s); bonus skipped",
                    voucher_id,
                    payment_id,
                    exc.user_message,
                )
                credit_bonus, balance_bonus = 0, Decimal("0")

            if credit_bonus > 0:
                await post_entry(
                    session,
                    payment.user_id,
                    entry_type=LedgerEntryType.CREDIT_BONUS,
                    credits=credit_bonus,
                    description="Voucher credit bonus",
                    voucher_id=voucher_id,
                )
            if balance_bonus > 0:
                await post_entry(
                    session,
                    payment.user_id,
                    entry_type=LedgerEntryType.VOUCHER_REDEEM,
                    amount=balance_bonus,
                    description="Voucher balance bonus",
                    voucher_id=voucher_id,
                )

    logger.info("payment %s completed for user %s", payment_id, payment.user_id)
    return {"payment_id": payment_id, "status": PaymentStatus.COMPLETED.value, "processed": True}
