from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

import models  # noqa: F401
from database import Base
from models.credit_transaction import CreditTransaction
from models.enums import VoucherType
from models.payment import Payment
from models.user import User
from models.voucher import Voucher
from services.errors import ConfigurationError, EntitlementError, VoucherError
from services.ledger import get_balance
from services.payments import confirm_payment, create_payment, payment_view
from services.vouchers import count_redemptions, seed_default_vouchers


@pytest_asyncio.fixture
async def payment_db(tmp_path):
    db_path = tmp_path / "payments.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_maker() as session:
        session.add_all(
            [
                User(id="payer-a", email="payer-a@local.invalid"),
                User(id="payer-b", email="payer-b@local.invalid"),
            ]
        )
        await session.commit()
        await seed_default_vouchers(session)
        yield session
    await engine.dispose()


async def _entries(session, user_id):
    result = await session.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.type.asc())
    )
    return result.scalars().all()


@pytest.mark.asyncio
async def test_balance_payment_prices_discount_and_credits_original_amount(payment_db):
    payment = await create_payment("payer-a", VoucherType.BALANCE, 150000, payment_db, voucher_code="topup50k")
    view = payment_view(payment)

    assert view["amount"] == "100000.00"
    assert view["original_amount"] == "150000.00"
    assert view["discount_amount"] == "50000.00"
    assert view["status"] == "pending"
    assert view["external_id"].startswith("GENO-")

    outcome = await confirm_payment(payment.id, payment_db)
    snapshot = await get_balance("payer-a", payment_db)
    entries = await _entries(payment_db, "payer-a")

    assert outcome == {"payment_id": payment.id, "status": "completed", "processed": True}
    assert snapshot.balance == Decimal("150000.00")
    assert [(entry.type, entry.payment_id) for entry in entries] == [("balance_topup", payment.id)]

    voucher = (await payment_db.execute(select(Voucher).where(Voucher.code == "TOPUP50K"))).scalar_one()
    assert await count_redemptions(voucher.id, payment_db) == 1


@pytest.mark.asyncio
async def test_repeated_confirmation_is_a_no_op(payment_db):
    payment = await create_payment("payer-a", VoucherType.BALANCE, 20000, payment_db)

    first = await confirm_payment(payment.id, payment_db)
    second = await confirm_payment(payment.id, payment_db)
    snapshot = await get_balance("payer-a", payment_db)

    assert first["processed"] is True
    assert second == {"payment_id": payment.id, "status": "completed", "processed": False}
    assert snapshot.balance == Decimal("20000.00")
    assert len(await _entries(payment_db, "payer-a")) == 1


@pytest.mark.asyncio
async def test_credit_purchase_with_bonus_voucher(payment_db):
    payment = await create_payment(
        "payer-a", VoucherType.CREDIT, 20000, payment_db, credit_amount=40, method="qris", voucher_code="CREDIT20"
    )
    assert payment_view(payment)["credit_bonus"] == 20

    await confirm_payment(payment.id, payment_db)
    snapshot = await get_balance("payer-a", payment_db)
    entries = await _entries(payment_db, "payer-a")

    assert snapshot.credits == 60
    assert [(entry.type, entry.credits) for entry in entries] == [("credit_bonus", 20), ("credit_purchase", 40)]
    assert entries[0].voucher_id is not None
    assert entries[1].payment_id == payment.id


@pytest.mark.asyncio
async def test_bonus_skipped_when_voucher_exhausted_before_settlement(payment_db):
    first = await create_payment("payer-a", VoucherType.CREDIT, 20000, payment_db, credit_amount=40, voucher_code="CREDIT20")
    second = await create_payment("payer-b", VoucherType.CREDIT, 20000, payment_db, credit_amount=40, voucher_code="CREDIT20")

    await confirm_payment(first.id, payment_db)
    outcome = await confirm_payment(second.id, payment_db)

    assert outcome["processed"] is True
    assert (await get_balance("payer-a", payment_db)).credits == 60
    assert (await get_balance("payer-b", payment_db)).credits == 40
    assert [entry.type for entry in await _entries(payment_db, "payer-b")] == ["credit_purchase"]


@pytest.mark.asyncio
async def test_failed_payment_moves_nothing(payment_db):
    payment = await create_payment("payer-a", VoucherType.BALANCE, 20000, payment_db)

    outcome = await confirm_payment(payment.id, payment_db, succeeded=False)
    stored = await payment_db.get(Payment, payment.id, populate_existing=True)

    assert outcome["status"] == "failed"
    assert stored.status == "failed"
    assert stored.paid_at is None
    assert await _entries(payment_db, "payer-a") == []


@pytest.mark.asyncio
async def test_create_payment_rejections(payment_db):
    with pytest.raises(EntitlementError) as too_small:
        await create_payment("payer-a", VoucherType.BALANCE, 9999, payment_db)
    assert too_small.value.user_message == "Minimum amount is 10,000"

    with pytest.raises(EntitlementError):
        await create_payment("payer-a", VoucherType.CREDIT, 20000, payment_db)

    with pytest.raises(VoucherError) as wrong_type:
        await create_payment("payer-a", VoucherType.BALANCE, 20000, payment_db, voucher_code="CREDIT20")
    assert wrong_type.value.user_message == "Voucher is only valid for credit transactions"

    with pytest.raises(ConfigurationError):
        await confirm_payment("missing-payment", payment_db)


@pytest.mark.asyncio
async def test_single_use_voucher_bonus_settles_once_per_user(payment_db):
    first = await create_payment("payer-a", VoucherType.CREDIT, 20000, payment_db, credit_amount=40, voucher_code="WELCOME10")
    second = await create_payment("payer-a", VoucherType.CREDIT, 20000, payment_db, credit_amount=40, voucher_code="WELCOME10")

    await confirm_payment(first.id, payment_db)
    outcome = await confirm_payment(second.id, payment_db)
    entries = await _entries(payment_db, "payer-a")

    assert outcome["processed"] is True
    assert (await get_balance("payer-a", payment_db)).credits == 90
    assert [entry.type for entry in entries] == ["credit_bonus", "credit_purchase", "credit_purchase"]

    voucher = (await payment_db.execute(select(Voucher).where(Voucher.code == "WELCOME10"))).scalar_one()
    assert await count_redemptions(voucher.id, payment_db) == 1
