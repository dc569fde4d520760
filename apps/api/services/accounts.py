"""Account store helpers: lazy creation, lookup, cancellation and admin setup."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import insert_ignore
from models.account import Account
from services.errors import AccountNotFoundError
from services.plans import AGENCY, STATUS_ACTIVE, STATUS_CANCELLED, as_utc, plan_snapshot

logger = logging.getLogger(__name__)


async def get_account(user_id: str, db: AsyncSession) -> Optional[Account]:
    # Balances and plan columns are mutated with bulk UPDATEs; always reload them.
    result = await db.execute(
        select(Account).where(Account.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_account(user_id: str, db: AsyncSession) -> Account:
    account = await get_account(user_id, db)
    if account is None:
        raise AccountNotFoundError("Account not found. Bootstrap the account and retry.", user_id=user_id)
    return account


async def _email_holder(email: str, db: AsyncSession) -> Optional[str]:
    result = await db.execute(select(Account.id).where(Account.email == email))
    return result.scalar_one_or_none()


async def ensure_account(
    user_id: str,
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    commit: bool = True,
) -> bool:
    """Create the account if it does not exist. Returns True when a row was created.

    Concurrent callers race on the primary key; the loser's insert is ignored.
    An email already held by another account is not stamped on the new row.
    """
    values: Dict[str, Any] = {
        "id": user_id,
        "subscription_tier": "free",
        "subscription_status": "inactive",
        "credits": max(int(settings.DEFAULT_SIGNUP_CREDITS), 0),
        "is_admin": False,
    }
    normalized_email = email.strip().lower() if email else None
    if normalized_email:
        holder = await _email_holder(normalized_email, db)
        if holder is None:
            values["email"] = normalized_email
        elif holder != user_id:
            logger.warning("account_email_in_use user=%s holder=%s", user_id, holder)

    created = await insert_ignore(db, Account, values)
    if not created and "email" in values and await get_account(user_id, db) is None:
        # Lost an email race to another account; create the row without it.
        logger.warning("account_email_in_use user=%s", user_id)
        values.pop("email")
        created = await insert_ignore(db, Account, values, conflict_columns=["id"])
    if commit:
        await db.commit()
    if created:
        logger.info("account_created user=%s", user_id)
    return created


async def cancel_subscription(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Soft cancel: mark the subscription cancelled, keep access until plan_expiry."""
    account = await require_account(user_id, db)
    await db.execute(
        update(Account)
        .where(Account.id == user_id)
        .values(subscription_status=STATUS_CANCELLED)
    )
    await db.commit()
    await db.refresh(account)
    expiry = as_utc(account.plan_expiry)
    logger.info("subscription_cancelled user=%s expires_at=%s", user_id, expiry)
    return {
        "success": True,
        "message": "Subscription cancelled. Your access will continue until the end of your billing period.",
        "expires_at": expiry.isoformat() if expiry else None,
        "plan": plan_snapshot(account),
    }


async def setup_admin_account(
    email: str,
    db: AsyncSession,
    *,
    credits: Optional[int] = None,
) -> Dict[str, Any]:
    """Grant the top tier for a year to the existing account registered under ``email``."""
    normalized_email = email.strip().lower()
    result = await db.execute(select(Account).where(Account.email == normalized_email))
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError(
            "No account with this email. The user must sign in once before admin setup.",
            email=normalized_email,
        )

    granted_credits = credits if credits is not None else settings.ADMIN_DEFAULT_CREDITS
    expiry = datetime.now(timezone.utc) + timedelta(days=int(settings.ADMIN_PLAN_DURATION_DAYS))
    await db.execute(
        update(Account)
        .where(Account.id == account.id)
        .values(
            subscription_tier=AGENCY,
            subscription_status=STATUS_ACTIVE,
            plan_expiry=expiry,
            credits=max(int(granted_credits), 0),
        )
    )
    await db.commit()
    await db.refresh(account)
    logger.info("admin_setup email=%s user=%s", normalized_email, account.id)
    return {
        "success": True,
        "message": f"Admin account setup complete for {normalized_email}",
        "account": {
            "user_id": account.id,
            "email": account.email,
            "subscription_tier": account.subscription_tier,
            "subscription_status": account.subscription_status,
            "credits": account.credits,
            "plan_expiry": as_utc(account.plan_expiry).isoformat() if account.plan_expiry else None,
        },
    }
