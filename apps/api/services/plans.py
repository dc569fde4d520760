"""
Plan evaluation: paid status, tier, and expiry derived from an account snapshot.

Every entitlement decision in the API (credits, daily usage, tier gates,
webhook bookkeeping) goes through these functions. They are pure: no I/O and
no mutation, and ``now`` can be pinned for deterministic evaluation.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Optional

FREE = "free"
STARTER = "starter"
PRO = "pro"
AGENCY = "agency"

TIER_ORDER = (FREE, STARTER, PRO, AGENCY)
TIER_RANK = {tier: rank for rank, tier in enumerate(TIER_ORDER)}
PAID_TIERS = frozenset({STARTER, PRO, AGENCY})
TIER_ALIASES = {
    "paid": STARTER,
    "operator": AGENCY,
}

STATUS_INACTIVE = "inactive"
STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"

EXPIRING_SOON_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps (as SQLite returns them) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_tier(value: Any) -> str:
    """Resolve a stored tier label (including legacy aliases) to a known tier."""
    text = str(value or "").strip().lower()
    text = TIER_ALIASES.get(text, text)
    return text if text in TIER_RANK else FREE


def parse_tier(value: Any) -> str:
    """Strict variant of normalize_tier for caller input: unknown labels raise ValueError."""
    text = str(value or "").strip().lower()
    tier = TIER_ALIASES.get(text, text)
    if tier not in TIER_RANK:
        raise ValueError(f"Unknown tier: {value}")
    return tier


def is_paid(account: Any, now: Optional[datetime] = None) -> bool:
    if account is None:
        return False
    if getattr(account, "is_admin", False):
        return True
    if getattr(account, "subscription_status", None) != STATUS_ACTIVE:
        return False

    expiry = as_utc(getattr(account, "plan_expiry", None))
    if expiry is None or expiry <= (now or _utcnow()):
        return False

    return normalize_tier(getattr(account, "subscription_tier", None)) in PAID_TIERS


def get_tier(account: Any, now: Optional[datetime] = None) -> str:
    if not is_paid(account, now):
        return FREE
    return normalize_tier(getattr(account, "subscription_tier", None))


def can_access_tier(account: Any, required: str, now: Optional[datetime] = None) -> bool:
    """True when the account's effective tier meets or exceeds ``required``."""
    required_tier = normalize_tier(required)
    if required_tier == FREE:
        return True
    if account is not None and getattr(account, "is_admin", False):
        return True
    return TIER_RANK[get_tier(account, now)] >= TIER_RANK[required_tier]


def days_until_expiry(account: Any, now: Optional[datetime] = None) -> Optional[int]:
    expiry = as_utc(getattr(account, "plan_expiry", None)) if account is not None else None
    if expiry is None:
        return None
    remaining_seconds = (expiry - (now or _utcnow())).total_seconds()
    days = math.ceil(remaining_seconds / 86400)
    return days if days > 0 else 0


def is_plan_expiring_soon(account: Any, now: Optional[datetime] = None) -> bool:
    days = days_until_expiry(account, now)
    return days is not None and 0 < days <= EXPIRING_SOON_DAYS


def plan_snapshot(account: Any, now: Optional[datetime] = None) -> dict:
    """Serializable summary of the account's plan state for API responses."""
    current = now or _utcnow()
    expiry = as_utc(getattr(account, "plan_expiry", None))
    return {
        "tier": get_tier(account, current),
        "subscription_tier": getattr(account, "subscription_tier", FREE),
        "subscription_status": getattr(account, "subscription_status", STATUS_INACTIVE),
        "plan_expiry": expiry.isoformat() if expiry else None,
        "is_paid": is_paid(account, current),
        "is_admin": bool(getattr(account, "is_admin", False)),
        "days_until_expiry": days_until_expiry(account, current),
        "expiring_soon": is_plan_expiring_soon(account, current),
    }
