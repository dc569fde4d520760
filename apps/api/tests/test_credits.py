import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select, update

from models.account import Account
from models.credit_transaction import CreditTransaction
from services.accounts import ensure_account, get_account
from services.credits import get_credit_summary, use_credits
from services.errors import AccountNotFoundError, InsufficientCreditsError, InvalidFeatureError
from services.session_token import create_session_token


TEST_USER_ID = "credits_user"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_USER_ID)['token']}"}


async def _set_account(db, user_id: str, **values):
    await db.execute(update(Account).where(Account.id == user_id).values(**values))
    await db.commit()


async def _transaction_count(db, user_id: str) -> int:
    result = await db.execute(select(func.count(CreditTransaction.id)).where(CreditTransaction.user_id == user_id))
    return int(result.scalar() or 0)


@pytest.mark.asyncio
async def test_five_planner_uses_spend_ten_credits(db):
    await ensure_account(TEST_USER_ID, db)

    for _ in range(5):
        outcome = await use_credits(TEST_USER_ID, "planner", db)
        assert outcome["success"] is True
        assert outcome["credits_used"] == 2

    assert outcome["credits_remaining"] == 90
    account = await get_account(TEST_USER_ID, db)
    assert account.credits == 90
    assert await _transaction_count(db, TEST_USER_ID) == 5


@pytest.mark.asyncio
async def test_insufficient_credits_leaves_balance_untouched(db):
    await ensure_account(TEST_USER_ID, db)
    await _set_account(db, TEST_USER_ID, credits=1)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await use_credits(TEST_USER_ID, "scripts", db)

    assert exc_info.value.status_code == 403
    assert exc_info.value.detail["credits_remaining"] == 1
    assert exc_info.value.detail["credits_needed"] == 4
    account = await get_account(TEST_USER_ID, db)
    assert account.credits == 1
    assert await _transaction_count(db, TEST_USER_ID) == 0


@pytest.mark.asyncio
async def test_paid_account_never_spends_credits(db):
    await ensure_account(TEST_USER_ID, db)
    await _set_account(
        db,
        TEST_USER_ID,
        subscription_tier="pro",
        subscription_status="active",
        plan_expiry=datetime.now(timezone.utc) + timedelta(days=10),
    )

    outcome = await use_credits(TEST_USER_ID, "creator-audit", db)

    assert outcome == {
        "success": True,
        "credits_used": 0,
        "credits_remaining": -1,
        "credits_cost": 15,
        "unlimited": True,
    }
    account = await get_account(TEST_USER_ID, db)
    assert account.credits == 100
    result = await db.execute(select(CreditTransaction).where(CreditTransaction.user_id == TEST_USER_ID))
    entry = result.scalar_one()
    assert entry.credits_used == 0
    assert entry.credits_remaining == -1


@pytest.mark.asyncio
async def test_expired_plan_is_charged(db):
    await ensure_account(TEST_USER_ID, db)
    await _set_account(
        db,
        TEST_USER_ID,
        subscription_tier="pro",
        subscription_status="active",
        plan_expiry=datetime.now(timezone.utc) - timedelta(minutes=1),
    )

    outcome = await use_credits(TEST_USER_ID, "prompt-studio", db)

    assert outcome["credits_used"] == 5
    assert outcome["credits_remaining"] == 95


@pytest.mark.asyncio
async def test_unknown_feature_and_missing_account(db):
    with pytest.raises(InvalidFeatureError):
        await use_credits(TEST_USER_ID, "teleport", db)
    with pytest.raises(AccountNotFoundError):
        await use_credits("nobody", "planner", db)


@pytest.mark.asyncio
async def test_concurrent_spends_never_overdraw(session_maker):
    async with session_maker() as db:
        await ensure_account(TEST_USER_ID, db)
        await _set_account(db, TEST_USER_ID, credits=10)

    async def _spend():
        async with session_maker() as session:
            try:
                await use_credits(TEST_USER_ID, "scripts", session)
                return True
            except InsufficientCreditsError:
                return False

    results = await asyncio.gather(*[_spend() for _ in range(6)])

    assert results.count(True) == 2
    async with session_maker() as db:
        account = await get_account(TEST_USER_ID, db)
        assert account.credits == 2
        assert await _transaction_count(db, TEST_USER_ID) == 2


@pytest.mark.asyncio
async def test_credit_summary_lists_recent_entries(db):
    await ensure_account(TEST_USER_ID, db)
    await use_credits(TEST_USER_ID, "content-ideas", db)

    summary = await get_credit_summary(TEST_USER_ID, db)

    assert summary["balance"] == 98
    assert summary["unlimited"] is False
    assert summary["costs"]["creator-audit"] == 15
    assert summary["recent_entries"][0]["feature"] == "content-ideas"


@pytest.mark.asyncio
async def test_use_credits_endpoint_bootstraps_account(client: AsyncClient):
    response = await client.post("/credits/use", json={"feature": "hook-caption"}, headers=TEST_AUTH_HEADER)
    assert response.status_code == 200
    assert response.json()["credits_remaining"] == 97

    balance = await client.get("/credits/balance", headers=TEST_AUTH_HEADER)
    assert balance.status_code == 200
    assert balance.json() == {"credits": 97, "is_admin": False, "is_paid": False, "unlimited": False}


@pytest.mark.asyncio
async def test_use_credits_endpoint_reports_shortfall(client: AsyncClient, session_maker):
    async with session_maker() as db:
        await ensure_account(TEST_USER_ID, db)
        await _set_account(db, TEST_USER_ID, credits=1)

    response = await client.post("/credits/use", json={"feature": "scripts"}, headers=TEST_AUTH_HEADER)

    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["success"] is False
    assert detail["credits_remaining"] == 1
    assert detail["credits_needed"] == 4
    assert detail["requires_upgrade"] is True


@pytest.mark.asyncio
async def test_use_credits_endpoint_rejects_foreign_user_id(client: AsyncClient):
    response = await client.post(
        "/credits/use",
        json={"feature": "planner", "user_id": "someone_else"},
        headers=TEST_AUTH_HEADER,
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_credits_require_session_token(client: AsyncClient):
    response = await client.post("/credits/use", json={"feature": "planner"})
    assert response.status_code == 401
