"""
Account mutations applied by payment reconciliation.

Stripe and Razorpay both write subscription state to the same account row, and
providers deliver events concurrently, out of order, and more than once. Every
mutation here is therefore a single UPDATE whose result does not depend on
the order it runs in: expiry only ever moves forward, downgrades only apply to
the subscription they name, and each applied event is recorded so a replay
is detected before it touches the account.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import insert_ignore
from models.account import Account
from models.webhook_event import WebhookEvent
from services.plans import FREE, PAID_TIERS, STATUS_ACTIVE, STATUS_CANCELLED, normalize_tier

logger = logging.getLogger(__name__)

SUBSCRIPTION_REFERENCE_COLUMNS = {
    "stripe": "stripe_subscription_id",
    "razorpay": "razorpay_subscription_id",
}


def _extended_expiry(expiry: datetime):
    return case(
        (Account.plan_expiry.is_(None), expiry),
        (Account.plan_expiry < expiry, expiry),
        else_=Account.plan_expiry,
    )


async def activate_plan(
    db: AsyncSession,
    user_id: str,
    plan: str,
    expiry: datetime,
    **references: Optional[str],
) -> bool:
    """Set tier=plan and status=active, extending plan_expiry to at least ``expiry``."""
    tier = normalize_tier(plan)
    if tier not in PAID_TIERS:
        raise ValueError(f"Cannot activate non-paid plan {plan!r}")
    values: Dict[str, Any] = {
        "subscription_tier": tier,
        "subscription_status": STATUS_ACTIVE,
        "plan_expiry": _extended_expiry(expiry),
    }
    values.update({column: value for column, value in references.items() if value})
    result = await db.execute(
        update(Account)
        .where(Account.id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    logger.info("plan_activated user=%s plan=%s expiry=%s", user_id, tier, expiry.isoformat())
    return (result.rowcount or 0) > 0


async def confirm_renewal(db: AsyncSession, user_id: str, expiry: datetime) -> bool:
    """Re-confirm a paid subscription after a recurring charge; the tier is unchanged."""
    await db.execute(
        update(Account)
        .where(Account.id == user_id)
        .values(plan_expiry=_extended_expiry(expiry))
        .execution_options(synchronize_session=False)
    )
    # A free account stays free: the renewal only reactivates a tier some activation granted.
    result = await db.execute(
        update(Account)
        .where(Account.id == user_id, Account.subscription_tier != FREE)
        .values(subscription_status=STATUS_ACTIVE)
        .execution_options(synchronize_session=False)
    )
    logger.info("plan_renewed user=%s expiry=%s", user_id, expiry.isoformat())
    return (result.rowcount or 0) > 0


async def downgrade_to_free(db: AsyncSession, user_id: str, provider: str, subscription_id: str) -> bool:
    """Provider-initiated hard downgrade, applied only if the account still holds that subscription."""
    column_name = SUBSCRIPTION_REFERENCE_COLUMNS[provider]
    column = getattr(Account, column_name)
    result = await db.execute(
        update(Account)
        .where(Account.id == user_id, column == subscription_id)
        .values(
            subscription_tier=FREE,
            subscription_status=STATUS_CANCELLED,
            **{column_name: None},
        )
        .execution_options(synchronize_session=False)
    )
    downgraded = (result.rowcount or 0) > 0
    logger.info(
        "plan_downgraded user=%s provider=%s subscription=%s applied=%s",
        user_id,
        provider,
        subscription_id,
        downgraded,
    )
    return downgraded


async def record_cancelled_subscription(
    db: AsyncSession,
    user_id: str,
    provider: str,
    expiry: datetime,
    **references: Optional[str],
) -> bool:
    """Apply an activation that arrives after its subscription was cancelled.

    The row ends exactly where activate_plan followed by downgrade_to_free
    would leave it: free, cancelled, expiry extended, subscription cleared.
    """
    column_name = SUBSCRIPTION_REFERENCE_COLUMNS[provider]
    values: Dict[str, Any] = {column: value for column, value in references.items() if value}
    values.update(
        {
            "subscription_tier": FREE,
            "subscription_status": STATUS_CANCELLED,
            "plan_expiry": _extended_expiry(expiry),
            column_name: None,
        }
    )
    result = await db.execute(
        update(Account)
        .where(Account.id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    logger.info("plan_activation_after_cancel user=%s provider=%s", user_id, provider)
    return (result.rowcount or 0) > 0


async def find_user_by_subscription(db: AsyncSession, provider: str, subscription_id: str) -> Optional[str]:
    column = getattr(Account, SUBSCRIPTION_REFERENCE_COLUMNS[provider])
    result = await db.execute(select(Account.id).where(column == subscription_id).limit(1))
    return result.scalar_one_or_none()


async def event_seen(db: AsyncSession, provider: str, event_type: str, object_id: Optional[str]) -> bool:
    """True when an event of ``event_type`` for ``object_id`` was already applied."""
    if not object_id:
        return False
    result = await db.execute(
        select(WebhookEvent.id)
        .where(
            WebhookEvent.provider == provider,
            WebhookEvent.event_type == event_type,
            WebhookEvent.object_id == object_id,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def apply_webhook_event(
    db: AsyncSession,
    *,
    provider: str,
    event_id: str,
    event_type: str,
    object_id: Optional[str],
    user_id: Optional[str],
    handler: Callable[[], Awaitable[Any]],
) -> Dict[str, Any]:
    """Record the event and apply ``handler`` in one transaction; replays are skipped."""
    try:
        fresh = await insert_ignore(
            db,
            WebhookEvent,
            {
                "provider": provider,
                "event_id": event_id,
                "event_type": event_type,
                "object_id": object_id,
                "user_id": user_id,
            },
            conflict_columns=["provider", "event_id"],
        )
        if not fresh:
            await db.rollback()
            logger.info("webhook_duplicate provider=%s event=%s type=%s", provider, event_id, event_type)
            return {"received": True, "duplicate": True}

        await handler()
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("webhook_applied provider=%s event=%s type=%s", provider, event_id, event_type)
    return {"received": True}
