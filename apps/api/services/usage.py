"""Daily usage counters for the count-metered free-tier features."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import insert_ignore
from models.usage_record import UsageRecord
from services.accounts import get_account
from services.errors import InvalidFeatureError
from services.plans import is_paid

logger = logging.getLogger(__name__)

UNLIMITED = -1

# Credit-metered features are capped by their cost and never counted here.
FREE_DAILY_LIMITS: Dict[str, int] = {
    "hook-caption": 10,
    "planner": 10,
}


def get_daily_limit(feature: str) -> int:
    try:
        return FREE_DAILY_LIMITS[feature]
    except KeyError:
        raise InvalidFeatureError(f"Invalid feature: {feature}", feature=feature) from None


def utc_day_window(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Return [today 00:00 UTC, tomorrow 00:00 UTC)."""
    current = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    start = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


async def _count_today(user_id: str, feature: str, db: AsyncSession, now: Optional[datetime]) -> int:
    start, end = utc_day_window(now)
    result = await db.execute(
        select(func.count(UsageRecord.id)).where(
            UsageRecord.user_id == user_id,
            UsageRecord.feature == feature,
            UsageRecord.usage_date >= start,
            UsageRecord.usage_date < end,
        )
    )
    return int(result.scalar() or 0)


async def check_usage(
    user_id: str,
    feature: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    limit = get_daily_limit(feature)
    try:
        account = await get_account(user_id, db)
        is_admin = bool(account is not None and account.is_admin)
        if is_paid(account, now):
            return {
                "allowed": True,
                "remaining": UNLIMITED,
                "limit": UNLIMITED,
                "used": 0,
                "is_paid": True,
                "is_admin": is_admin,
            }
        used = await _count_today(user_id, feature, db, now)
    except SQLAlchemyError as exc:
        # Availability over strict enforcement: a failed read lets the request through.
        logger.warning("usage_check_failed_open user=%s feature=%s error=%s", user_id, feature, exc)
        return {
            "allowed": True,
            "remaining": limit,
            "limit": limit,
            "used": 0,
            "is_paid": False,
            "is_admin": False,
            "degraded": True,
        }

    return {
        "allowed": used < limit,
        "remaining": max(0, limit - used),
        "limit": limit,
        "used": used,
        "is_paid": False,
        "is_admin": is_admin,
    }


async def record_usage(
    user_id: str,
    feature: str,
    db: AsyncSession,
    *,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Append one usage row for today. A repeated idempotency key is a no-op.

    Paid and admin accounts are unlimited, so nothing is written for them.
    """
    get_daily_limit(feature)
    if is_paid(await get_account(user_id, db), now):
        return {"success": True, "duplicate": False, "recorded": False}
    start, _ = utc_day_window(now)
    key = (idempotency_key or "").strip() or None
    values = {
        "user_id": user_id,
        "feature": feature,
        "usage_date": start,
        "idempotency_key": key,
    }
    if key is None:
        db.add(UsageRecord(**values))
        await db.flush()
        inserted = True
    else:
        inserted = await insert_ignore(
            db,
            UsageRecord,
            values,
            conflict_columns=["user_id", "feature", "idempotency_key"],
        )
    await db.commit()
    if not inserted:
        logger.info("usage_record_duplicate user=%s feature=%s key=%s", user_id, feature, key)
    return {"success": True, "duplicate": not inserted, "recorded": inserted}


async def get_usage_stats(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Dict[str, int]]:
    start, end = utc_day_window(now)
    result = await db.execute(
        select(UsageRecord.feature, func.count(UsageRecord.id))
        .where(
            UsageRecord.user_id == user_id,
            UsageRecord.usage_date >= start,
            UsageRecord.usage_date < end,
        )
        .group_by(UsageRecord.feature)
    )
    counts = {feature: int(count) for feature, count in result.all()}
    stats: Dict[str, Dict[str, int]] = {}
    for feature, limit in FREE_DAILY_LIMITS.items():
        used = counts.get(feature, 0)
        stats[feature] = {"used": used, "limit": limit, "remaining": max(0, limit - used)}
    return stats
