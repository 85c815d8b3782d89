from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from config import settings
from database import Base, get_db
from llm.models import UpstreamResult
from main import app
from models.api_credential import ApiCredential
from models.user import User
from services.session_token import ADMIN_ROLE, create_session_token


TEST_USER_ID = "route-user"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_USER_ID, 'route@example.com')['token']}"}
ADMIN_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token('route-admin', role=ADMIN_ROLE)['token']}"}
PAYMENT_SECRET = "payment-webhook-secret-for-tests"


class FixedTransport:
    def __init__(self):
        self.calls = []

    async def generate(self, api_key, model, system_instruction, parts, config):
        self.calls.append(api_key)
        return UpstreamResult(text="C. Photosynthesis", input_tokens=40, output_tokens=4, total_tokens=44)


@pytest_asyncio.fixture
async def integration_client(tmp_path):
    db_path = tmp_path / "api_routes.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_maker() as session:
        session.add(User(id=TEST_USER_ID, email="route@example.com", credits=1, balance=Decimal("1200")))
        await session.commit()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(integration_client):
    client, _ = integration_client
    response = await client.get("/billing/balance")
    assert response.status_code == 401

    response = await client.get("/billing/balance", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_first_call_provisions_unknown_user(integration_client):
    client, session_maker = integration_client
    header = {"Authorization": f"Bearer {create_session_token('fresh-user', 'fresh@example.com')['token']}"}

    response = await client.get("/billing/balance", headers=header)

    assert response.status_code == 200
    assert response.json() == {
        "credits": 0,
        "balance": "0.00",
        "subscription_status": "free",
        "subscription_expiry": None,
    }
    async with session_maker() as session:
        user = await session.get(User, "fresh-user")
    assert user.email == "fresh@example.com"


@pytest.mark.asyncio
async def test_ask_through_free_pool_session(integration_client):
    client, _ = integration_client
    transport = FixedTransport()

    with patch("services.gateway.GeminiTransport", return_value=transport), \
         patch("services.credential_pool.GeminiTransport") as validator_class:
        validator_class.return_value.test_api_key = AsyncMock(return_value=True)
        key = await client.post(
            "/admin/house-keys",
            json={"api_key": "AIzaSyD-house-route-key-0000000001", "priority": 1},
            headers=ADMIN_AUTH_HEADER,
        )
        assert key.status_code == 201
        assert key.json()["key"]["masked_key"] == "AIzaSyD-...0001"

        created = await client.post(
            "/sessions",
            json={"request_mode": "free_pool", "answer_mode": "single", "model": "gemini-2.0-flash"},
            headers=TEST_AUTH_HEADER,
        )
        assert created.status_code == 201
        session_id = created.json()["session_id"]
        assert session_id.startswith("sess_")

        response = await client.post(
            "/gateway/ask",
            json={
                "session_id": session_id,
                "question": "Which process makes glucose in plants?",
                "few_shot_examples": [{"question": "Which organelle stores DNA?", "answer": "A"}],
            },
            headers=TEST_AUTH_HEADER,
        )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["data"]["answer"] == "C. Photosynthesis"
    assert payload["data"]["credits_deducted"] == 0
    assert payload["data"]["tokens_used"] == 44
    assert transport.calls == ["AIzaSyD-house-route-key-0000000001"]


@pytest.mark.asyncio
async def test_ask_with_unknown_session_returns_error_envelope(integration_client):
    client, _ = integration_client
    response = await client.post(
        "/gateway/ask",
        json={"session_id": "sess_missing", "question": "Anything?"},
        headers=TEST_AUTH_HEADER,
    )
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Session not found or inactive", "request_id": None}


@pytest.mark.asyncio
async def test_exchange_and_transaction_history(integration_client):
    client, _ = integration_client

    rate = await client.get("/billing/exchange")
    assert rate.json() == {"balance_per_credit": "500", "minimum_amount": "500"}

    exchanged = await client.post("/billing/exchange", json={"amount": 1200}, headers=TEST_AUTH_HEADER)
    assert exchanged.status_code == 200
    body = exchanged.json()
    assert body["credits_received"] == 2
    assert body["remainder"] == "200.00"
    assert body["credits"] == 3
    assert body["balance"] == "0.00"

    broke = await client.post("/billing/exchange", json={"amount": 500}, headers=TEST_AUTH_HEADER)
    assert broke.status_code == 402

    history = await client.get("/billing/transactions?limit=10", headers=TEST_AUTH_HEADER)
    assert history.status_code == 200
    assert history.json()["total"] == 2
    assert {row["type"] for row in history.json()["transactions"]} == {"exchange_debit", "exchange_credit"}


@pytest.mark.asyncio
async def test_voucher_validate_and_redeem(integration_client):
    client, _ = integration_client

    seeded = await client.post("/admin/vouchers/seed", headers=ADMIN_AUTH_HEADER)
    assert seeded.json() == {"created": ["WELCOME10", "TOPUP50K", "CREDIT20"]}

    validation = await client.post(
        "/vouchers/validate",
        json={"code": "TOPUP50K", "amount": 120000, "type": "balance"},
        headers=TEST_AUTH_HEADER,
    )
    assert validation.json()["valid"] is True
    assert validation.json()["discount_amount"] == "50000.00"
    assert validation.json()["final_amount"] == "70000.00"

    redeemed = await client.post("/vouchers/redeem", json={"code": "welcome10"}, headers=TEST_AUTH_HEADER)
    assert redeemed.status_code == 200
    assert redeemed.json()["credits_added"] == 10
    assert redeemed.json()["credits"] == 11

    again = await client.post("/vouchers/redeem", json={"code": "WELCOME10"}, headers=TEST_AUTH_HEADER)
    assert again.status_code == 400
    assert again.json()["detail"] == "You have already used this voucher"

    discount_only = await client.post("/vouchers/redeem", json={"code": "TOPUP50K"}, headers=TEST_AUTH_HEADER)
    assert discount_only.status_code == 400

    history = await client.get("/vouchers/history", headers=TEST_AUTH_HEADER)
    assert [row["voucher"]["code"] for row in history.json()["redemptions"]] == ["WELCOME10"]

    active = await client.get("/vouchers/active?type=credit")
    assert {voucher["code"] for voucher in active.json()["vouchers"]} == {"WELCOME10", "CREDIT20"}


@pytest.mark.asyncio
async def test_payment_confirmation_requires_secret_and_is_idempotent(integration_client):
    client, session_maker = integration_client

    created = await client.post(
        "/payments",
        json={"type": "credit", "amount": 25000, "credits": 50, "method": "bank_transfer"},
        headers=TEST_AUTH_HEADER,
    )
    assert created.status_code == 201
    payment_id = created.json()["id"]

    with patch.object(settings, "PAYMENT_WEBHOOK_SECRET", PAYMENT_SECRET):
        forbidden = await client.post(f"/payments/{payment_id}/confirm", headers={"X-Payment-Secret": "wrong"})
        assert forbidden.status_code == 403

        first = await client.post(f"/payments/{payment_id}/confirm", headers={"X-Payment-Secret": PAYMENT_SECRET})
        second = await client.post(f"/payments/{payment_id}/confirm", headers={"X-Payment-Secret": PAYMENT_SECRET})
        missing = await client.post("/payments/nope/confirm", headers={"X-Payment-Secret": PAYMENT_SECRET})

    assert first.json()["processed"] is True
    assert second.json()["processed"] is False
    assert missing.status_code == 404

    async with session_maker() as session:
        user = (await session.execute(select(User).where(User.id == TEST_USER_ID))).scalar_one()
    assert user.credits == 51

    with patch.object(settings, "PAYMENT_WEBHOOK_SECRET", ""):
        unconfigured = await client.post(f"/payments/{payment_id}/confirm", headers={"X-Payment-Secret": "anything"})
    assert unconfigured.status_code == 503


@pytest.mark.asyncio
async def test_user_api_keys_lifecycle(integration_client):
    client, _ = integration_client

    with patch("services.credential_pool.GeminiTransport") as transport_class:
        transport_class.return_value.test_api_key = AsyncMock(return_value=True)
        added = await client.post("/api-keys", json={"api_key": "AIzaSyD-user-route-key-000000abcd"}, headers=TEST_AUTH_HEADER)
        duplicate = await client.post("/api-keys", json={"api_key": "AIzaSyD-user-route-key-000000abcd"}, headers=TEST_AUTH_HEADER)

    assert added.status_code == 201
    assert added.json()["key"]["masked_key"] == "AIzaSyD-...abcd"
    assert duplicate.status_code == 409

    listed = await client.get("/api-keys", headers=TEST_AUTH_HEADER)
    assert [key["id"] for key in listed.json()["keys"]] == [added.json()["key"]["id"]]

    deleted = await client.delete(f"/api-keys/{added.json()['key']['id']}", headers=TEST_AUTH_HEADER)
    assert deleted.json() == {"ok": True}
    gone = await client.delete(f"/api-keys/{added.json()['key']['id']}", headers=TEST_AUTH_HEADER)
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_admin_routes_require_admin_role(integration_client):
    client, _ = integration_client

    response = await client.post("/admin/vouchers/seed", headers=TEST_AUTH_HEADER)
    assert response.status_code == 403

    with patch.object(settings, "ADMIN_USER_IDS", [TEST_USER_ID]):
        response = await client.get("/admin/house-keys", headers=TEST_AUTH_HEADER)
    assert response.status_code == 200
    assert response.json() == {"keys": []}


@pytest.mark.asyncio
async def test_admin_config_and_voucher_management(integration_client):
    client, _ = integration_client

    invalid = await client.put("/admin/config/balance_to_credit_rate", json={"value": "-5"}, headers=ADMIN_AUTH_HEADER)
    assert invalid.status_code == 400

    updated = await client.put("/admin/config/balance_to_credit_rate", json={"value": "400"}, headers=ADMIN_AUTH_HEADER)
    assert updated.json()["value"] == "400"
    assert (await client.get("/billing/exchange")).json()["balance_per_credit"] == "400"

    created = await client.post(
        "/admin/vouchers",
        json={"code": "exam25", "name": "Exam week", "type": "credit", "credit_bonus": 25, "max_uses": 5},
        headers=ADMIN_AUTH_HEADER,
    )
    assert created.status_code == 201
    assert created.json()["code"] == "EXAM25"

    duplicate = await client.post(
        "/admin/vouchers",
        json={"code": "EXAM25", "name": "Again", "type": "credit", "credit_bonus": 1},
        headers=ADMIN_AUTH_HEADER,
    )
    assert duplicate.status_code == 409

    deactivated = await client.post(f"/admin/vouchers/{created.json()['id']}/deactivate", headers=ADMIN_AUTH_HEADER)
    assert deactivated.json()["is_active"] is False


@pytest.mark.asyncio
async def test_rate_limit_falls_back_to_local_counters(integration_client):
    client, _ = integration_client
    app.state.disable_rate_limits = False

    with patch("routers.rate_limit._consume_redis_quota", new=AsyncMock(side_effect=ConnectionError("redis down"))):
        statuses = [
            (await client.post("/api-keys", json={"api_key": "short"}, headers=TEST_AUTH_HEADER)).status_code
            for _ in range(11)
        ]

    assert statuses[:10] == [400] * 10
    assert statuses[10] == 429


@pytest.mark.asyncio
async def test_health_endpoints(integration_client):
    client, session_maker = integration_client
    async with session_maker() as session:
        session.add_all(
            [
                ApiCredential(encrypted_key="x", key_fingerprint="fp-live", key_prefix="AIza", key_suffix="live"),
                ApiCredential(encrypted_key="y", key_fingerprint="fp-dead", key_prefix="AIza", key_suffix="dead", status="dead"),
            ]
        )
        await session.commit()

    with patch("routers.health.redis.from_url", side_effect=ConnectionError("redis down")):
        report = (await client.get("/health")).json()

    assert report["database"] == "up"
    assert report["free_pool"] == {"active": 1, "rate_limited": 0, "dead": 1}
    assert report["redis_fallback"] == "local"
    assert report["status"] == "healthy"
    assert (await client.get("/health/ready")).json() == {"ready": True}
    assert (await client.get("/health/live")).json() == {"alive": True}
    assert (await client.get("/")).json()["name"] == "Genova AI Gateway"


@pytest.mark.asyncio
async def test_sessions_are_listed_and_deactivated_per_owner(integration_client):
    client, _ = integration_client
    other_header = {"Authorization": f"Bearer {create_session_token('other-route-user')['token']}"}

    created = await client.post("/sessions", json={"name": "Biology quiz", "request_mode": "premium"}, headers=TEST_AUTH_HEADER)
    session_id = created.json()["session_id"]
    assert created.json()["answer_mode"] == "short"

    assert (await client.get("/sessions", headers=other_header)).json() == {"sessions": []}
    foreign = await client.post(f"/sessions/{session_id}/deactivate", headers=other_header)
    assert foreign.status_code == 404

    closed = await client.post(f"/sessions/{session_id}/deactivate", headers=TEST_AUTH_HEADER)
    assert closed.json()["is_active"] is False

    ask = await client.post("/gateway/ask", json={"session_id": session_id, "question": "Still there?"}, headers=TEST_AUTH_HEADER)
    assert ask.json()["error"] == "Session not found or inactive"


@pytest.mark.asyncio
async def test_admin_adjusts_user_credits_and_balance(integration_client):
    client, _ = integration_client
    url = f"/admin/users/{TEST_USER_ID}"

    added = await client.post(f"{url}/credits-adjust", json={"amount": 4, "type": "add", "reason": "Outage"}, headers=ADMIN_AUTH_HEADER)
    assert added.status_code == 200
    assert added.json()["credits"] == 4
    assert added.json()["description"] == "Admin credit addition - Outage (by route-admin). Previous: 1, New: 5"

    refused = await client.post(f"{url}/credits-adjust", json={"amount": 6, "type": "deduct", "reason": "Abuse"}, headers=ADMIN_AUTH_HEADER)
    assert refused.status_code == 400
    assert refused.json()["detail"] == "Insufficient credits for deduction"

    deducted = await client.post(f"{url}/balance-adjust", json={"amount": "200", "type": "deduct", "reason": "Abuse"}, headers=ADMIN_AUTH_HEADER)
    assert deducted.json()["amount"] == "-200.00"

    assert (await client.post(f"{url}/credits-adjust", json={"amount": 0, "type": "add", "reason": "x"}, headers=ADMIN_AUTH_HEADER)).status_code == 422
    assert (await client.post(f"{url}/credits-adjust", json={"amount": 1, "type": "gift", "reason": "x"}, headers=ADMIN_AUTH_HEADER)).status_code == 422
    assert (await client.post(f"{url}/credits-adjust", json={"amount": 1, "type": "add", "reason": "  "}, headers=ADMIN_AUTH_HEADER)).status_code == 400
    missing = await client.post("/admin/users/nobody/balance-adjust", json={"amount": "1", "type": "add", "reason": "x"}, headers=ADMIN_AUTH_HEADER)
    assert missing.status_code == 404
    forbidden = await client.post(f"{url}/credits-adjust", json={"amount": 1, "type": "add", "reason": "x"}, headers=TEST_AUTH_HEADER)
    assert forbidden.status_code == 403

    balance = (await client.get("/billing/balance", headers=TEST_AUTH_HEADER)).json()
    assert balance["credits"] == 5
    assert balance["balance"] == "1000.00"
    history = (await client.get("/billing/transactions", headers=TEST_AUTH_HEADER)).json()
    assert sorted(row["type"] for row in history["transactions"]) == ["admin_balance_deduct", "admin_credit_add"]


@pytest.mark.asyncio
async def test_admin_house_key_update_and_delete(integration_client):
    client, session_maker = integration_client
    async with session_maker() as session:
        session.add_all(
            [
                ApiCredential(id="house-live", encrypted_key="x", key_fingerprint="fp-live", key_prefix="AIza", key_suffix="live"),
                ApiCredential(id="house-dead", encrypted_key="y", key_fingerprint="fp-dead", key_prefix="AIza", key_suffix="dead", status="dead"),
            ]
        )
        await session.commit()

    patched = await client.patch("/admin/house-keys/house-live", json={"priority": 2}, headers=ADMIN_AUTH_HEADER)
    assert patched.json()["key"]["priority"] == 2

    revived = await client.patch("/admin/house-keys/house-dead", json={"status": "active"}, headers=ADMIN_AUTH_HEADER)
    assert revived.status_code == 400
    empty = await client.patch("/admin/house-keys/house-live", json={}, headers=ADMIN_AUTH_HEADER)
    assert empty.status_code == 400
    unknown = await client.patch("/admin/house-keys/missing", json={"priority": 1}, headers=ADMIN_AUTH_HEADER)
    assert unknown.status_code == 404

    deleted = await client.delete("/admin/house-keys/house-dead", headers=ADMIN_AUTH_HEADER)
    assert deleted.json() == {"ok": True}
    gone = await client.delete("/admin/house-keys/house-dead", headers=ADMIN_AUTH_HEADER)
    assert gone.status_code == 404

    keys = (await client.get("/admin/house-keys", headers=ADMIN_AUTH_HEADER)).json()["keys"]
    assert [(key["id"], key["status"]) for key in keys] == [("house-live", "active")]


@pytest.mark.asyncio
async def test_admin_lists_voucher_redemptions(integration_client):
    client, _ = integration_client
    await client.post("/admin/vouchers/seed", headers=ADMIN_AUTH_HEADER)
    await client.post("/vouchers/redeem", json={"code": "WELCOME10"}, headers=TEST_AUTH_HEADER)
    active = (await client.get("/vouchers/active?type=credit")).json()["vouchers"]
    welcome_id = next(voucher["id"] for voucher in active if voucher["code"] == "WELCOME10")

    listing = await client.get(f"/admin/vouchers/{welcome_id}/redemptions", headers=ADMIN_AUTH_HEADER)

    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["redemptions"][0]["user"]["email"] == "route@example.com"
    missing = await client.get("/admin/vouchers/missing/redemptions", headers=ADMIN_AUTH_HEADER)
    assert missing.status_code == 404
