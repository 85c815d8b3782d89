import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

import models  # noqa: F401
from database import Base
from models.credit_transaction import CreditTransaction
from models.enums import DiscountType, VoucherType
from models.user import User
from models.voucher import Voucher, VoucherRedemption
from services.errors import ConfigurationError, DuplicateVoucherError, VoucherError, VoucherNotRedeemableError
from services.ledger import get_balance
from services.unit_of_work import UnitOfWork
from services.vouchers import (
    calculate_discount,
    count_redemptions,
    create_voucher,
    deactivate_voucher,
    get_active_vouchers,
    get_user_voucher_history,
    list_voucher_redemptions,
    record_redemption,
    redeem_voucher,
    seed_default_vouchers,
    validate_voucher,
)


@pytest_asyncio.fixture
async def voucher_db(tmp_path):
    db_path = tmp_path / "vouchers.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_maker() as session:
        session.add_all(
            [
                User(id="voucher-a", email="voucher-a@local.invalid"),
                User(id="voucher-b", email="voucher-b@local.invalid"),
            ]
        )
        await session.commit()
        await seed_default_vouchers(session)

    yield session_maker
    await engine.dispose()


async def _voucher(session, code):
    result = await session.execute(
        select(Voucher).where(Voucher.code == code).execution_options(populate_existing=True)
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_seed_is_idempotent(voucher_db):
    async with voucher_db() as session:
        assert await seed_default_vouchers(session) == []
        welcome = await _voucher(session, "WELCOME10")

    assert welcome.credit_bonus == 10
    assert welcome.max_uses == 1000
    assert welcome.end_date is not None


@pytest.mark.asyncio
async def test_redeem_credit_voucher_grants_bonus_once(voucher_db):
    async with voucher_db() as session:
        result = await redeem_voucher(" welcome10 ", "voucher-a", session)
        snapshot = await get_balance("voucher-a", session)
        welcome = await _voucher(session, "WELCOME10")

        with pytest.raises(VoucherError) as again:
            await redeem_voucher("WELCOME10", "voucher-a", session)

        entries = (
            await session.execute(select(CreditTransaction).where(CreditTransaction.user_id == "voucher-a"))
        ).scalars().all()

    assert result.voucher_name == "Welcome Bonus"
    assert result.credits_added == 10
    assert result.balance_added == Decimal("0.00")
    assert snapshot.credits == 10
    assert welcome.used_count == 1
    assert again.value.user_message == "You have already used this voucher"
    assert [(entry.type, entry.credits, entry.voucher_id) for entry in entries] == [
        ("voucher_redeem", 10, welcome.id)
    ]


@pytest.mark.asyncio
async def test_redeem_respects_usage_cap(voucher_db):
    async with voucher_db() as session:
        await redeem_voucher("CREDIT20", "voucher-a", session)
        with pytest.raises(VoucherError) as capped:
            await redeem_voucher("CREDIT20", "voucher-b", session)
        snapshot = await get_balance("voucher-b", session)

    assert capped.value.user_message == "Voucher has reached maximum usage"
    assert snapshot.credits == 0


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_exceed_cap(voucher_db):
    async def attempt(user_id):
        async with voucher_db() as session:
            try:
                await redeem_voucher("CREDIT20", user_id, session)
            except VoucherError:
                return False
            return True

    outcomes = await asyncio.gather(attempt("voucher-a"), attempt("voucher-b"))

    assert sorted(outcomes) == [False, True]
    async with voucher_db() as session:
        voucher = await _voucher(session, "CREDIT20")
        assert voucher.used_count == 1
        assert await count_redemptions(voucher.id, session) == 1


@pytest.mark.asyncio
async def test_discount_only_voucher_cannot_be_redeemed_directly(voucher_db):
    async with voucher_db() as session:
        with pytest.raises(VoucherNotRedeemableError):
            await redeem_voucher("TOPUP50K", "voucher-a", session)
        voucher = await _voucher(session, "TOPUP50K")

    assert voucher.used_count == 0


@pytest.mark.asyncio
async def test_redeem_balance_voucher(voucher_db):
    async with voucher_db() as session:
        await create_voucher(
            "cashback",
            "Cashback",
            VoucherType.BALANCE,
            session,
            balance_bonus=Decimal("5000"),
            allow_multiple_use_per_user=True,
        )
        first = await redeem_voucher("CASHBACK", "voucher-a", session)
        second = await redeem_voucher("CASHBACK", "voucher-a", session)
        snapshot = await get_balance("voucher-a", session)

    assert first.balance_added == Decimal("5000.00")
    assert second.credits_added == 0
    assert snapshot.balance == Decimal("10000.00")


@pytest.mark.asyncio
async def test_validation_rules_in_order(voucher_db):
    now = datetime.now(timezone.utc)
    async with voucher_db() as session:
        await create_voucher(
            "EXPIRED", "Expired", VoucherType.CREDIT, session, credit_bonus=5,
            start_date=now - timedelta(days=10), end_date=now - timedelta(days=1),
        )
        await create_voucher(
            "LATER", "Later", VoucherType.CREDIT, session, credit_bonus=5,
            start_date=now + timedelta(days=1), end_date=now + timedelta(days=10),
        )
        retired = await create_voucher("RETIRED", "Retired", VoucherType.CREDIT, session, credit_bonus=5)
        await deactivate_voucher(retired.id, session)
        await redeem_voucher("CREDIT20", "voucher-b", session)

        async def error(code, amount=0, kind=VoucherType.CREDIT):
            return (await validate_voucher(code, "voucher-a", amount, kind, session)).error

        assert await error("NOPE") == "Voucher not found"
        assert await error("RETIRED") == "Voucher is not active"
        assert await error("EXPIRED") == "Voucher has expired"
        assert await error("LATER") == "Voucher not yet valid"
        assert await error("WELCOME10", kind=VoucherType.BALANCE) == "Voucher is only valid for credit transactions"
        assert await error("TOPUP50K", 99999, VoucherType.BALANCE) == "Minimum amount is 100,000.00"
        assert await error("CREDIT20") == "Voucher has reached maximum usage"

        await redeem_voucher("WELCOME10", "voucher-a", session)
        assert await error("WELCOME10") == "You have already used this voucher"


@pytest.mark.asyncio
async def test_validation_reports_discount_and_bonuses(voucher_db):
    async with voucher_db() as session:
        result = await validate_voucher("topup50k", "voucher-a", 150000, VoucherType.BALANCE, session)
        welcome = await validate_voucher("WELCOME10", "voucher-a", 0, VoucherType.CREDIT, session)

    assert result.valid is True
    assert result.discount_amount == Decimal("50000.00")
    assert result.as_dict()["voucher"]["code"] == "TOPUP50K"
    assert welcome.credit_bonus == 10
    assert welcome.discount_amount == Decimal("0.00")


def test_calculate_discount():
    percentage = Voucher(discount_type=DiscountType.PERCENTAGE.value, value=Decimal("10"), max_discount=None)
    capped = Voucher(discount_type=DiscountType.PERCENTAGE.value, value=Decimal("50"), max_discount=Decimal("30000"))
    fixed = Voucher(discount_type=DiscountType.FIXED.value, value=Decimal("2500"))

    assert calculate_discount(percentage, Decimal("12345")) == Decimal("1234.50")
    assert calculate_discount(capped, Decimal("100000")) == Decimal("30000.00")
    assert calculate_discount(fixed, Decimal("999999")) == Decimal("2500.00")


@pytest.mark.asyncio
async def test_create_voucher_rejections(voucher_db):
    now = datetime.now(timezone.utc)
    async with voucher_db() as session:
        with pytest.raises(DuplicateVoucherError):
            await create_voucher("welcome10", "Copy", VoucherType.CREDIT, session, credit_bonus=1)
        with pytest.raises(VoucherError):
            await create_voucher(
                "HALF", "Too much", VoucherType.BALANCE, session,
                discount_type=DiscountType.PERCENTAGE, value=150,
            )
        with pytest.raises(VoucherError):
            await create_voucher(
                "BACKWARDS", "Backwards", VoucherType.CREDIT, session,
                credit_bonus=1, start_date=now, end_date=now - timedelta(hours=1),
            )
        with pytest.raises(VoucherError):
            await create_voucher("   ", "Blank", VoucherType.CREDIT, session, credit_bonus=1)


@pytest.mark.asyncio
async def test_active_vouchers_hide_expired_exhausted_and_inactive(voucher_db):
    now = datetime.now(timezone.utc)
    async with voucher_db() as session:
        await create_voucher(
            "EXPIRED", "Expired", VoucherType.CREDIT, session, credit_bonus=5,
            start_date=now - timedelta(days=10), end_date=now - timedelta(days=1),
        )
        await redeem_voucher("CREDIT20", "voucher-a", session)

        codes = {voucher["code"] for voucher in await get_active_vouchers(session)}
        balance_codes = {voucher["code"] for voucher in await get_active_vouchers(session, VoucherType.BALANCE)}

    assert codes == {"WELCOME10", "TOPUP50K"}
    assert balance_codes == {"TOPUP50K"}


@pytest.mark.asyncio
async def test_user_history_lists_own_redemptions(voucher_db):
    async with voucher_db() as session:
        await redeem_voucher("WELCOME10", "voucher-a", session)
        history = await get_user_voucher_history("voucher-a", session)
        other = await get_user_voucher_history("voucher-b", session)

    assert len(history) == 1
    assert history[0]["voucher"]["code"] == "WELCOME10"
    assert history[0]["credits_bonus"] == 10
    assert other == []


@pytest.mark.asyncio
async def test_concurrent_redemptions_by_one_user_grant_a_single_bonus(voucher_db):
    async def attempt():
        async with voucher_db() as session:
            try:
                await redeem_voucher("WELCOME10", "voucher-a", session)
            except VoucherError as exc:
                return exc.user_message
            return "ok"

    outcomes = await asyncio.gather(attempt(), attempt(), attempt())

    assert sorted(outcomes) == ["You have already used this voucher"] * 2 + ["ok"]
    async with voucher_db() as session:
        voucher = await _voucher(session, "WELCOME10")
        snapshot = await get_balance("voucher-a", session)
        assert voucher.used_count == 1
        assert await count_redemptions(voucher.id, session) == 1
    assert snapshot.credits == 10


@pytest.mark.asyncio
async def test_rejected_repeat_leaves_usage_count_untouched(voucher_db):
    async with voucher_db() as session:
        voucher = await _voucher(session, "WELCOME10")
        async with UnitOfWork(session) as uow:
            await record_redemption(uow.session, voucher, "voucher-a", credit_bonus=10)

        with pytest.raises(VoucherError) as again:
            async with UnitOfWork(session) as uow:
                await record_redemption(uow.session, voucher, "voucher-a", credit_bonus=10)

        reloaded = await _voucher(session, "WELCOME10")
        redemption = (
            await session.execute(select(VoucherRedemption).where(VoucherRedemption.voucher_id == voucher.id))
        ).scalar_one()

    assert again.value.user_message == "You have already used this voucher"
    assert reloaded.used_count == 1
    assert redemption.per_user_key == "voucher-a"


@pytest.mark.asyncio
async def test_voucher_redemptions_listed_newest_first_with_user(voucher_db):
    async with voucher_db() as session:
        await redeem_voucher("WELCOME10", "voucher-a", session)
        await redeem_voucher("WELCOME10", "voucher-b", session)
        welcome = await _voucher(session, "WELCOME10")
        listing = await list_voucher_redemptions(welcome.id, session)
        first_page = await list_voucher_redemptions(welcome.id, session, limit=1)
        with pytest.raises(ConfigurationError):
            await list_voucher_redemptions("missing", session)

    assert listing["total"] == 2
    assert listing["voucher"]["code"] == "WELCOME10"
    emails = [row["user"]["email"] for row in listing["redemptions"]]
    assert sorted(emails) == ["voucher-a@local.invalid", "voucher-b@local.invalid"]
    assert listing["redemptions"][0]["credits_bonus"] == 10
    assert len(first_page["redemptions"]) == 1
    assert first_page["total"] == 2
    assert first_page["redemptions"][0]["id"] == listing["redemptions"][0]["id"]
