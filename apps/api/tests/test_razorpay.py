import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select, update

from config import settings
from models.account import Account
from models.payment_record import PaymentRecord
from services.accounts import ensure_account, get_account
from services.errors import PaymentProviderError
from services.plans import as_utc, is_paid
from services.razorpay_billing import quote_plan, verify_payment_signature
from services.session_token import create_session_token


KEY_ID = "rzp_test_key"
KEY_SECRET = "razorpay_key_secret"
WEBHOOK_SECRET = "razorpay_webhook_secret"
TEST_USER_ID = "razorpay_user"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_USER_ID)['token']}"}
ORDER_ID = "order_ABC"
PAYMENT_ID = "pay_XYZ"


@pytest.fixture(autouse=True)
def razorpay_settings(monkeypatch):
    monkeypatch.setattr(settings, "RAZORPAY_KEY_ID", KEY_ID)
    monkeypatch.setattr(settings, "RAZORPAY_KEY_SECRET", KEY_SECRET)
    monkeypatch.setattr(settings, "RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)


def _signature(order_id: str = ORDER_ID, payment_id: str = PAYMENT_ID) -> str:
    return hmac.new(KEY_SECRET.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def _payment(status: str = "captured") -> dict:
    return {"id": PAYMENT_ID, "order_id": ORDER_ID, "status": status, "amount": 49900, "currency": "INR"}


def _order(plan: str = "starter", user_id: str = TEST_USER_ID) -> dict:
    return {"id": ORDER_ID, "amount": 49900, "notes": {"user_id": user_id, "plan": plan}}


def _provider_mocks(payment=None, order=None):
    return (
        patch("services.razorpay_billing.fetch_payment", new=AsyncMock(return_value=payment or _payment())),
        patch("services.razorpay_billing.fetch_order", new=AsyncMock(return_value=order or _order())),
    )


async def _verify(client: AsyncClient, signature: str = None):
    return await client.post(
        "/billing/razorpay/verify",
        json={"order_id": ORDER_ID, "payment_id": PAYMENT_ID, "signature": signature or _signature()},
        headers=TEST_AUTH_HEADER,
    )


async def _payment_count(session_maker) -> int:
    async with session_maker() as db:
        result = await db.execute(select(func.count(PaymentRecord.id)))
        return int(result.scalar() or 0)


def test_payment_signature_check():
    assert verify_payment_signature(ORDER_ID, PAYMENT_ID, _signature()) is True
    assert verify_payment_signature(ORDER_ID, PAYMENT_ID, _signature(payment_id="pay_other")) is False


@pytest.mark.asyncio
async def test_verify_activates_plan_once(client: AsyncClient, session_maker):
    payment_patch, order_patch = _provider_mocks()
    with payment_patch, order_patch:
        first = await _verify(client)
        second = await _verify(client)

    assert first.status_code == 200
    assert first.json()["already_processed"] is False
    assert first.json()["plan"]["tier"] == "starter"
    assert second.status_code == 200
    assert second.json()["already_processed"] is True
    assert await _payment_count(session_maker) == 1

    async with session_maker() as db:
        account = await get_account(TEST_USER_ID, db)
        assert account.subscription_tier == "starter"
        assert account.razorpay_payment_id == PAYMENT_ID
        assert account.razorpay_order_id == ORDER_ID
        assert is_paid(account) is True


@pytest.mark.asyncio
async def test_tampered_signature_rejected_without_mutation(client: AsyncClient, session_maker):
    payment_patch, order_patch = _provider_mocks()
    with payment_patch as fetch_payment, order_patch:
        response = await _verify(client, signature="0" * 64)

    assert response.status_code == 400
    fetch_payment.assert_not_called()
    assert await _payment_count(session_maker) == 0
    async with session_maker() as db:
        assert await get_account(TEST_USER_ID, db) is None


@pytest.mark.asyncio
async def test_uncaptured_payment_rejected(client: AsyncClient, session_maker):
    payment_patch, order_patch = _provider_mocks(payment=_payment(status="failed"))
    with payment_patch, order_patch:
        response = await _verify(client)

    assert response.status_code == 400
    assert await _payment_count(session_maker) == 0


@pytest.mark.asyncio
async def test_order_for_another_user_rejected(client: AsyncClient, session_maker):
    payment_patch, order_patch = _provider_mocks(order=_order(user_id="someone_else"))
    with payment_patch, order_patch:
        response = await _verify(client)

    assert response.status_code == 403
    assert await _payment_count(session_maker) == 0


@pytest.mark.asyncio
async def test_first_time_discount_only_without_prior_payment(db):
    first = await quote_plan(TEST_USER_ID, "starter", db)
    assert first["amount"] == 499
    assert first["display_price"] == 799
    assert first["discount_applied"] is True

    pro = await quote_plan(TEST_USER_ID, "pro", db)
    assert pro["amount"] == 2499
    assert pro["discount_applied"] is False

    db.add(Account(id=TEST_USER_ID, credits=100))
    db.add(
        PaymentRecord(
            user_id=TEST_USER_ID,
            provider="razorpay",
            payment_id="pay_old",
            plan="starter",
            amount=49900,
        )
    )
    await db.commit()

    repeat = await quote_plan(TEST_USER_ID, "starter", db)
    assert repeat["amount"] == 799
    assert repeat["discount_applied"] is False


@pytest.mark.asyncio
async def test_create_order_sends_paise_and_notes(client: AsyncClient):
    request = AsyncMock(return_value={"id": "order_new", "amount": 49900, "currency": "INR"})
    with patch("services.razorpay_billing._razorpay_request", new=request):
        response = await client.post("/billing/razorpay/order", json={"plan": "starter"}, headers=TEST_AUTH_HEADER)

    assert response.status_code == 200
    body = response.json()
    assert body["order_id"] == "order_new"
    assert body["key"] == KEY_ID
    assert body["discount_applied"] is True

    method, path, payload = request.call_args.args
    assert (method, path) == ("POST", "/orders")
    assert payload["amount"] == 49900
    assert payload["notes"] == {
        "user_id": TEST_USER_ID,
        "plan": "starter",
        "amount_charged": "499",
        "display_price": "799",
    }


@pytest.mark.asyncio
async def test_order_rejects_unknown_plan(client: AsyncClient):
    response = await client.post("/billing/razorpay/order", json={"plan": "agency"}, headers=TEST_AUTH_HEADER)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_missing_credentials_is_configuration_error(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "RAZORPAY_KEY_SECRET", "")
    response = await _verify(client)
    assert response.status_code == 500


def _webhook(event: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(event).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return body, {"X-Razorpay-Signature": signature, "Content-Type": "application/json"}


def _captured_event() -> dict:
    return {
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {
                    "id": PAYMENT_ID,
                    "order_id": ORDER_ID,
                    "status": "captured",
                    "amount": 249900,
                    "currency": "INR",
                    "notes": {"user_id": TEST_USER_ID, "plan": "pro"},
                }
            }
        },
    }


@pytest.mark.asyncio
async def test_payment_captured_webhook_replay(client: AsyncClient, session_maker):
    body, headers = _webhook(_captured_event())
    headers["X-Razorpay-Event-Id"] = "evt_rzp_1"

    first = await client.post("/webhooks/razorpay", content=body, headers=headers)
    second = await client.post("/webhooks/razorpay", content=body, headers=headers)

    assert first.json() == {"received": True}
    assert second.json() == {"received": True, "duplicate": True}
    assert await _payment_count(session_maker) == 1
    async with session_maker() as db:
        account = await get_account(TEST_USER_ID, db)
        assert account.subscription_tier == "pro"


@pytest.mark.asyncio
async def test_webhook_and_verify_share_one_payment_record(client: AsyncClient, session_maker):
    body, headers = _webhook(_captured_event())
    await client.post("/webhooks/razorpay", content=body, headers=headers)

    payment_patch, order_patch = _provider_mocks(order=_order(plan="pro"))
    with payment_patch, order_patch:
        response = await _verify(client)

    assert response.json()["already_processed"] is True
    assert await _payment_count(session_maker) == 1


@pytest.mark.asyncio
async def test_webhook_bad_signature_rejected(client: AsyncClient, session_maker):
    body, headers = _webhook(_captured_event(), secret="not-the-secret")
    response = await client.post("/webhooks/razorpay", content=body, headers=headers)

    assert response.status_code == 400
    assert await _payment_count(session_maker) == 0


@pytest.mark.asyncio
async def test_subscription_lifecycle_webhooks(client: AsyncClient, session_maker):
    subscription = {"id": "sub_rzp_1", "current_end": 4102444800, "notes": {"user_id": TEST_USER_ID, "plan": "pro"}}

    for event_type in ("subscription.activated", "subscription.charged"):
        body, headers = _webhook({"event": event_type, "payload": {"subscription": {"entity": subscription}}})
        response = await client.post("/webhooks/razorpay", content=body, headers=headers)
        assert response.status_code == 200

    async with session_maker() as db:
        account = await get_account(TEST_USER_ID, db)
        assert account.subscription_tier == "pro"
        assert account.subscription_status == "active"
        assert account.razorpay_subscription_id == "sub_rzp_1"

    body, headers = _webhook({"event": "subscription.cancelled", "payload": {"subscription": {"entity": subscription}}})
    await client.post("/webhooks/razorpay", content=body, headers=headers)

    async with session_maker() as db:
        account = await get_account(TEST_USER_ID, db)
        assert account.subscription_tier == "free"
        assert account.subscription_status == "cancelled"
        assert account.razorpay_subscription_id is None


@pytest.mark.asyncio
@pytest.mark.parametrize("cancelled_first", [True, False])
async def test_subscription_activation_and_cancel_converge_in_either_order(
    client: AsyncClient, session_maker, cancelled_first
):
    subscription = {"id": "sub_rzp_2", "current_end": 4102444800, "notes": {"user_id": TEST_USER_ID, "plan": "pro"}}
    event_types = ["subscription.activated", "subscription.cancelled"]
    if cancelled_first:
        event_types.reverse()

    for event_type in event_types:
        body, headers = _webhook({"event": event_type, "payload": {"subscription": {"entity": subscription}}})
        response = await client.post("/webhooks/razorpay", content=body, headers=headers)
        assert response.status_code == 200

    async with session_maker() as db:
        account = await get_account(TEST_USER_ID, db)
        assert account.subscription_tier == "free"
        assert account.subscription_status == "cancelled"
        assert account.razorpay_subscription_id is None
        assert int(as_utc(account.plan_expiry).timestamp()) == 4102444800
        assert is_paid(account) is False


def test_non_ascii_signature_is_a_mismatch():
    assert verify_payment_signature(ORDER_ID, PAYMENT_ID, "é" * 64) is False
    assert verify_payment_signature(ORDER_ID, PAYMENT_ID, "\ud800" * 64) is False
    assert verify_payment_signature("order_é", PAYMENT_ID, _signature()) is False


@pytest.mark.asyncio
async def test_verify_with_non_ascii_signature_rejected(client: AsyncClient, session_maker):
    response = await _verify(client, signature="é" * 64)

    assert response.status_code == 400
    assert await _payment_count(session_maker) == 0


@pytest.mark.asyncio
async def test_webhook_with_non_ascii_signature_header_rejected(client: AsyncClient, session_maker):
    body, headers = _webhook(_captured_event())
    headers["X-Razorpay-Signature"] = b"\xff" * 64

    response = await client.post("/webhooks/razorpay", content=body, headers=headers)

    assert response.status_code == 400
    assert await _payment_count(session_maker) == 0


async def _subscribed_account(session_maker, subscription_id: str = "sub_rzp_9") -> None:
    async with session_maker() as db:
        await ensure_account(TEST_USER_ID, db)
        await db.execute(
            update(Account)
            .where(Account.id == TEST_USER_ID)
            .values(
                subscription_tier="pro",
                subscription_status="active",
                plan_expiry=datetime.now(timezone.utc) + timedelta(days=20),
                razorpay_subscription_id=subscription_id,
            )
        )
        await db.commit()


@pytest.mark.asyncio
async def test_cancel_stops_razorpay_renewal_at_cycle_end(client: AsyncClient, session_maker):
    await _subscribed_account(session_maker)

    with patch("services.razorpay_billing._razorpay_request", new=AsyncMock(return_value={})) as request:
        response = await client.post("/billing/subscription/cancel", json={}, headers=TEST_AUTH_HEADER)

    assert response.status_code == 200
    request.assert_awaited_once_with("POST", "/subscriptions/sub_rzp_9/cancel", {"cancel_at_cycle_end": 1})
    plan = response.json()["plan"]
    assert plan["subscription_tier"] == "pro"
    assert plan["subscription_status"] == "cancelled"


@pytest.mark.asyncio
async def test_cancel_keeps_subscription_when_razorpay_rejects(client: AsyncClient, session_maker):
    await _subscribed_account(session_maker)

    with patch(
        "services.razorpay_billing._razorpay_request",
        new=AsyncMock(side_effect=PaymentProviderError("Subscription not found")),
    ):
        response = await client.post("/billing/subscription/cancel", json={}, headers=TEST_AUTH_HEADER)

    assert response.status_code == 502
    async with session_maker() as db:
        account = await get_account(TEST_USER_ID, db)
        assert account.subscription_status == "active"
