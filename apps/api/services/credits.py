"""Credit ledger: per-feature credit costs, atomic deduction and transaction log."""

from __future__ import annotations

from typing import Any, Dict
import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.credit_transaction import CreditTransaction
from services.accounts import require_account
from services.errors import InsufficientCreditsError, InvalidFeatureError
from services.plans import is_paid

logger = logging.getLogger(__name__)

UNLIMITED = -1

FEATURE_CREDIT_COSTS: Dict[str, int] = {
    "prompt-studio": 5,
    "hook-caption": 3,
    "post-processing": 8,
    "creator-audit": 15,
    "planner": 2,
    "content-ideas": 2,
    "scripts": 4,
}


def get_credit_cost(feature: str) -> int:
    try:
        return FEATURE_CREDIT_COSTS[feature]
    except KeyError:
        raise InvalidFeatureError(f"Invalid feature: {feature}", feature=feature) from None


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(Account.credits).where(Account.id == user_id))
    return int(result.scalar() or 0)


def _log_transaction(db: AsyncSession, user_id: str, feature: str, credits_used: int, credits_remaining: int) -> None:
    db.add(
        CreditTransaction(
            user_id=user_id,
            feature=feature,
            credits_used=credits_used,
            credits_remaining=credits_remaining,
        )
    )


async def use_credits(user_id: str, feature: str, db: AsyncSession) -> Dict[str, Any]:
    """Charge ``feature`` against the user's balance, or log a free use for paid plans."""
    cost = get_credit_cost(feature)
    account = await require_account(user_id, db)

    if is_paid(account):
        _log_transaction(db, user_id, feature, credits_used=0, credits_remaining=UNLIMITED)
        await db.commit()
        return {
            "success": True,
            "credits_used": 0,
            "credits_remaining": UNLIMITED,
            "credits_cost": cost,
            "unlimited": True,
        }

    # Check and debit in one statement so concurrent requests cannot overspend.
    result = await db.execute(
        update(Account)
        .where(Account.id == user_id, Account.credits >= cost)
        .values(credits=Account.credits - cost)
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) == 0:
        await db.rollback()
        balance = await get_credit_balance(user_id, db)
        logger.info("credits_insufficient user=%s feature=%s balance=%s cost=%s", user_id, feature, balance, cost)
        raise InsufficientCreditsError(credits_remaining=balance, credits_needed=cost)

    new_balance = await get_credit_balance(user_id, db)
    _log_transaction(db, user_id, feature, credits_used=cost, credits_remaining=new_balance)
    await db.commit()
    logger.info("credits_used user=%s feature=%s cost=%s remaining=%s", user_id, feature, cost, new_balance)
    return {
        "success": True,
        "credits_used": cost,
        "credits_remaining": new_balance,
        "credits_cost": cost,
        "unlimited": False,
    }


async def set_credit_balance(user_id: str, credits: int, db: AsyncSession) -> int:
    await db.execute(
        update(Account)
        .where(Account.id == user_id)
        .values(credits=max(int(credits), 0))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return await get_credit_balance(user_id, db)


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    account = await require_account(user_id, db)
    unlimited = is_paid(account)
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": UNLIMITED if unlimited else int(account.credits or 0),
        "stored_balance": int(account.credits or 0),
        "unlimited": unlimited,
        "costs": dict(FEATURE_CREDIT_COSTS),
        "recent_entries": [
            {
                "id": entry.id,
                "feature": entry.feature,
                "credits_used": entry.credits_used,
                "credits_remaining": entry.credits_remaining,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
