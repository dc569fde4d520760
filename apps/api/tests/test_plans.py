from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from services.plans import (
    can_access_tier,
    days_until_expiry,
    get_tier,
    is_paid,
    is_plan_expiring_soon,
    normalize_tier,
    parse_tier,
    plan_snapshot,
)


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _account(**overrides):
    values = {
        "subscription_tier": "free",
        "subscription_status": "inactive",
        "plan_expiry": None,
        "is_admin": False,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_admin_is_paid_regardless_of_plan_fields():
    admin = _account(is_admin=True, subscription_tier="free", subscription_status="cancelled")
    assert is_paid(admin, NOW) is True
    assert can_access_tier(admin, "agency", NOW) is True


def test_active_plan_with_future_expiry_is_paid():
    account = _account(subscription_tier="pro", subscription_status="active", plan_expiry=NOW + timedelta(days=3))
    assert is_paid(account, NOW) is True
    assert get_tier(account, NOW) == "pro"


def test_past_expiry_is_not_paid():
    account = _account(subscription_tier="pro", subscription_status="active", plan_expiry=NOW - timedelta(seconds=1))
    assert is_paid(account, NOW) is False
    assert get_tier(account, NOW) == "free"


def test_free_tier_is_never_paid_even_when_active():
    account = _account(subscription_tier="free", subscription_status="active", plan_expiry=NOW + timedelta(days=30))
    assert is_paid(account, NOW) is False


def test_missing_account_is_free():
    assert is_paid(None, NOW) is False
    assert get_tier(None, NOW) == "free"
    assert can_access_tier(None, "free", NOW) is True
    assert can_access_tier(None, "starter", NOW) is False


def test_naive_expiry_is_treated_as_utc():
    account = _account(
        subscription_tier="starter",
        subscription_status="active",
        plan_expiry=(NOW + timedelta(hours=1)).replace(tzinfo=None),
    )
    assert is_paid(account, NOW) is True


def test_cancelled_plan_keeps_no_paid_status():
    account = _account(subscription_tier="pro", subscription_status="cancelled", plan_expiry=NOW + timedelta(days=5))
    assert is_paid(account, NOW) is False


@pytest.mark.parametrize(
    "tier,required,expected",
    [
        ("starter", "starter", True),
        ("starter", "pro", False),
        ("pro", "starter", True),
        ("agency", "pro", True),
        ("pro", "agency", False),
    ],
)
def test_tier_ordering(tier, required, expected):
    account = _account(subscription_tier=tier, subscription_status="active", plan_expiry=NOW + timedelta(days=1))
    assert can_access_tier(account, required, NOW) is expected


def test_legacy_aliases_resolve():
    assert normalize_tier("paid") == "starter"
    assert normalize_tier("Operator") == "agency"
    assert normalize_tier("platinum") == "free"
    account = _account(subscription_tier="operator", subscription_status="active", plan_expiry=NOW + timedelta(days=1))
    assert get_tier(account, NOW) == "agency"


def test_parse_tier_rejects_unknown_labels():
    assert parse_tier("PRO") == "pro"
    with pytest.raises(ValueError):
        parse_tier("platinum")


def test_days_until_expiry_rounds_up_and_floors_at_zero():
    assert days_until_expiry(_account(), NOW) is None
    assert days_until_expiry(_account(plan_expiry=NOW + timedelta(days=2, hours=1)), NOW) == 3
    assert days_until_expiry(_account(plan_expiry=NOW - timedelta(days=4)), NOW) == 0


def test_expiring_soon_window():
    assert is_plan_expiring_soon(_account(plan_expiry=NOW + timedelta(days=7)), NOW) is True
    assert is_plan_expiring_soon(_account(plan_expiry=NOW + timedelta(days=8)), NOW) is False
    assert is_plan_expiring_soon(_account(plan_expiry=NOW - timedelta(days=1)), NOW) is False


def test_plan_snapshot_shape():
    account = _account(subscription_tier="starter", subscription_status="active", plan_expiry=NOW + timedelta(days=2))
    snapshot = plan_snapshot(account, NOW)
    assert snapshot["tier"] == "starter"
    assert snapshot["is_paid"] is True
    assert snapshot["days_until_expiry"] == 2
    assert snapshot["expiring_soon"] is True
    assert snapshot["plan_expiry"].startswith("2026-03-12")
