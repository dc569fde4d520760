"""Routers package."""

from . import (
    health,
    auth,
    accounts,
    credits,
    usage,
    entitlements,
    billing,
    webhooks,
    admin,
)
