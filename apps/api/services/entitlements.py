"""
Entitlement gateway.

Combines plan evaluation, the credit ledger and daily usage counters behind a
single decision: may this user invoke this feature right now, and how much
quota is left afterwards. Each feature is metered by exactly one strategy.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from services.accounts import ensure_account, get_account
from services.credits import FEATURE_CREDIT_COSTS, UNLIMITED, use_credits
from services.errors import (
    AccountNotFoundError,
    AuthenticationRequiredError,
    InvalidFeatureError,
)
from services.plans import is_paid
from services.usage import FREE_DAILY_LIMITS, check_usage

logger = logging.getLogger(__name__)

T = TypeVar("T")

METERING_CREDITS = "credits"
METERING_USAGE = "usage"

# High-frequency, low-cost tools keep a daily cap; everything else spends credits.
FEATURE_METERING: Dict[str, str] = {
    "prompt-studio": METERING_CREDITS,
    "post-processing": METERING_CREDITS,
    "creator-audit": METERING_CREDITS,
    "content-ideas": METERING_CREDITS,
    "scripts": METERING_CREDITS,
    "hook-caption": METERING_USAGE,
    "planner": METERING_USAGE,
}


@dataclass
class EntitlementDecision:
    feature: str
    metering: str
    allowed: bool
    remaining: int
    limit: int
    is_paid: bool
    is_admin: bool = False
    used: Optional[int] = None
    charged: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def metering_for(feature: str) -> str:
    metering = FEATURE_METERING.get(feature)
    if metering is None:
        raise InvalidFeatureError(f"Invalid feature: {feature}", feature=feature)
    return metering


async def run_with_account_bootstrap(
    user_id: str,
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
) -> T:
    """Run ``operation``; if the account is missing, create it and retry exactly once."""
    try:
        return await operation()
    except AccountNotFoundError:
        logger.info("account_bootstrap_retry user=%s", user_id)
        await ensure_account(user_id, db)
        return await operation()


async def authorize_feature(user_id: Optional[str], feature: str, db: AsyncSession) -> EntitlementDecision:
    """Decide (and for credit-metered features, charge) one invocation of ``feature``."""
    if not user_id:
        raise AuthenticationRequiredError()
    metering = metering_for(feature)

    account = await get_account(user_id, db)
    if account is None:
        raise AccountNotFoundError("Account not found. Bootstrap the account and retry.", user_id=user_id)

    if account.is_admin:
        return EntitlementDecision(
            feature=feature,
            metering=metering,
            allowed=True,
            remaining=UNLIMITED,
            limit=UNLIMITED,
            is_paid=True,
            is_admin=True,
        )

    if metering == METERING_CREDITS:
        # The ledger logs the zero-cost transaction itself for paid plans.
        outcome = await use_credits(user_id, feature, db)
        return EntitlementDecision(
            feature=feature,
            metering=metering,
            allowed=True,
            remaining=int(outcome["credits_remaining"]),
            limit=FEATURE_CREDIT_COSTS[feature],
            is_paid=bool(outcome["unlimited"]),
            charged=int(outcome["credits_used"]),
        )

    if is_paid(account):
        return EntitlementDecision(
            feature=feature,
            metering=metering,
            allowed=True,
            remaining=UNLIMITED,
            limit=UNLIMITED,
            is_paid=True,
        )

    usage = await check_usage(user_id, feature, db)
    return EntitlementDecision(
        feature=feature,
        metering=metering,
        allowed=bool(usage["allowed"]),
        remaining=int(usage["remaining"]),
        limit=int(usage.get("limit", FREE_DAILY_LIMITS[feature])),
        is_paid=False,
        used=usage.get("used"),
    )
