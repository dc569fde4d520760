"""
Stripe subscription checkout and webhook reconciliation.

Checkout sessions are stamped with ``user_id`` and ``plan`` metadata (on the
session and on the subscription it creates) so every later event can be
mapped back to an account without trusting the browser redirect.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from config import require_stripe_secret_key, settings
from models.account import Account
from services.accounts import ensure_account
from services.errors import (
    ConfigurationError,
    InvalidPayloadError,
    InvalidPlanError,
    InvalidSignatureError,
    PaymentProviderError,
)
from services.plans import PAID_TIERS, STARTER, normalize_tier
from services.reconciliation import (
    activate_plan,
    apply_webhook_event,
    confirm_renewal,
    downgrade_to_free,
    event_seen,
    find_user_by_subscription,
    record_cancelled_subscription,
)

logger = logging.getLogger(__name__)

PROVIDER = "stripe"
CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.payment_succeeded"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
SIGNATURE_TOLERANCE_SECONDS = 300


def _secret_key() -> str:
    try:
        return require_stripe_secret_key()
    except ValueError as exc:
        raise ConfigurationError("Stripe is not configured.") from exc


def _price_id_for(plan: str) -> str:
    tier = normalize_tier(plan)
    if tier not in PAID_TIERS or str(plan).strip().lower() != tier:
        raise InvalidPlanError(f"Invalid plan: {plan}", plan=plan)
    price_id = (settings.STRIPE_PRICE_IDS or {}).get(tier, "").strip()
    if not price_id:
        raise ConfigurationError(f"No Stripe price configured for plan {tier}.")
    return price_id


def _ref_id(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


async def create_checkout_session(account: Account, plan: str) -> Dict[str, Any]:
    """Create a subscription Checkout Session and return its redirect URL."""
    price_id = _price_id_for(plan)
    tier = normalize_tier(plan)
    metadata = {"user_id": account.id, "plan": tier}
    params: Dict[str, Any] = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": settings.STRIPE_SUCCESS_URL,
        "cancel_url": settings.STRIPE_CANCEL_URL,
        "client_reference_id": account.id,
        "metadata": metadata,
        "subscription_data": {"metadata": dict(metadata)},
    }
    if account.stripe_customer_id:
        params["customer"] = account.stripe_customer_id
    elif account.email:
        params["customer_email"] = account.email

    try:
        session = await asyncio.to_thread(stripe.checkout.Session.create, api_key=_secret_key(), **params)
    except stripe.StripeError as exc:
        logger.exception("stripe_checkout_failed user=%s plan=%s", account.id, tier)
        raise PaymentProviderError("Could not create checkout session.") from exc

    logger.info("stripe_checkout_created user=%s plan=%s session=%s", account.id, tier, session.id)
    return {"checkout_url": session.url, "session_id": session.id, "plan": tier}


def verify_webhook(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """Verify the Stripe-Signature header over the raw body, then parse the event."""
    secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
    if not secret:
        raise ConfigurationError("Stripe webhook secret not configured.")
    if not sig_header:
        raise InvalidSignatureError("No signature provided.")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            sig_header,
            secret,
            tolerance=SIGNATURE_TOLERANCE_SECONDS,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        logger.warning("stripe_webhook_signature_invalid error=%s", exc)
        raise InvalidSignatureError() from exc

    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise InvalidPayloadError() from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise InvalidPayloadError()
    return event


def _metadata_of(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = _ref_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest the subscription under parent.subscription_details.
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _ref_id(details.get("subscription"))


def _invoice_metadata(invoice: Dict[str, Any]) -> Dict[str, Any]:
    details = invoice.get("subscription_details") or (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("metadata") or {}


def _invoice_period_end(invoice: Dict[str, Any]) -> datetime:
    ends = [
        (line.get("period") or {}).get("end")
        for line in ((invoice.get("lines") or {}).get("data") or [])
    ]
    ends = [int(end) for end in ends if end]
    if ends:
        return datetime.fromtimestamp(max(ends), tz=timezone.utc)
    if invoice.get("period_end"):
        return datetime.fromtimestamp(int(invoice["period_end"]), tz=timezone.utc)
    return datetime.now(timezone.utc) + timedelta(days=int(settings.PLAN_DURATION_DAYS))


async def _retrieve_subscription_user(subscription_id: str) -> Optional[str]:
    try:
        subscription = await asyncio.to_thread(
            stripe.Subscription.retrieve, subscription_id, api_key=_secret_key()
        )
    except stripe.StripeError as exc:
        logger.exception("stripe_subscription_lookup_failed subscription=%s", subscription_id)
        raise PaymentProviderError("Could not look up subscription.") from exc
    return (subscription.get("metadata") or {}).get("user_id")


async def _resolve_invoice_user(invoice: Dict[str, Any], subscription_id: str, db: AsyncSession) -> Optional[str]:
    user_id = await find_user_by_subscription(db, PROVIDER, subscription_id)
    if user_id:
        return user_id
    user_id = _invoice_metadata(invoice).get("user_id")
    if user_id:
        return user_id
    return await _retrieve_subscription_user(subscription_id)


async def _on_checkout_completed(obj: Dict[str, Any], db: AsyncSession) -> None:
    metadata = _metadata_of(obj)
    user_id = metadata.get("user_id") or obj.get("client_reference_id")
    subscription_id = _ref_id(obj.get("subscription"))
    if not user_id or not subscription_id:
        logger.error("stripe_checkout_missing_reference session=%s", obj.get("id"))
        return

    plan = normalize_tier(metadata.get("plan"))
    if plan not in PAID_TIERS:
        plan = STARTER
    expiry = datetime.now(timezone.utc) + timedelta(days=int(settings.PLAN_DURATION_DAYS))
    await ensure_account(user_id, db, commit=False)

    if await event_seen(db, PROVIDER, SUBSCRIPTION_DELETED, subscription_id):
        logger.info("stripe_checkout_after_deletion user=%s subscription=%s", user_id, subscription_id)
        await record_cancelled_subscription(
            db, user_id, PROVIDER, expiry, stripe_customer_id=_ref_id(obj.get("customer"))
        )
        return

    await activate_plan(
        db,
        user_id,
        plan,
        expiry,
        stripe_customer_id=_ref_id(obj.get("customer")),
        stripe_subscription_id=subscription_id,
    )


async def _on_invoice_paid(obj: Dict[str, Any], db: AsyncSession) -> None:
    subscription_id = _invoice_subscription(obj)
    if not subscription_id:
        logger.info("stripe_invoice_without_subscription invoice=%s", obj.get("id"))
        return
    user_id = await _resolve_invoice_user(obj, subscription_id, db)
    if not user_id:
        logger.error("stripe_invoice_user_unresolved subscription=%s", subscription_id)
        return
    await ensure_account(user_id, db, commit=False)
    await confirm_renewal(db, user_id, _invoice_period_end(obj))


async def _on_subscription_deleted(obj: Dict[str, Any], db: AsyncSession) -> None:
    subscription_id = _ref_id(obj.get("id"))
    if not subscription_id:
        return
    user_id = await find_user_by_subscription(db, PROVIDER, subscription_id) or _metadata_of(obj).get("user_id")
    if not user_id:
        logger.info("stripe_deletion_unknown_subscription subscription=%s", subscription_id)
        return
    await downgrade_to_free(db, user_id, PROVIDER, subscription_id)


_HANDLERS: Dict[str, Callable[[Dict[str, Any], AsyncSession], Awaitable[None]]] = {
    CHECKOUT_COMPLETED: _on_checkout_completed,
    INVOICE_PAID: _on_invoice_paid,
    SUBSCRIPTION_DELETED: _on_subscription_deleted,
}


def _event_object_id(event_type: str, obj: Dict[str, Any]) -> Optional[str]:
    if event_type == CHECKOUT_COMPLETED:
        return _ref_id(obj.get("subscription"))
    if event_type == INVOICE_PAID:
        return _invoice_subscription(obj)
    return _ref_id(obj.get("id"))


async def process_stripe_event(event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    """Apply one verified Stripe event exactly once."""
    event_type = str(event.get("type"))
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("stripe_event_ignored type=%s", event_type)
        return {"received": True, "ignored": True}

    obj = (event.get("data") or {}).get("object") or {}

    async def _apply() -> None:
        await handler(obj, db)

    return await apply_webhook_event(
        db,
        provider=PROVIDER,
        event_id=str(event["id"]),
        event_type=event_type,
        object_id=_event_object_id(event_type, obj),
        user_id=_metadata_of(obj).get("user_id"),
        handler=_apply,
    )


async def cancel_at_period_end(subscription_id: str) -> None:
    """Stop future renewals for a user-cancelled subscription; access runs to period end."""
    try:
        await asyncio.to_thread(
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
            api_key=_secret_key(),
        )
    except stripe.StripeError as exc:
        logger.exception("stripe_cancel_failed subscription=%s", subscription_id)
        raise PaymentProviderError("Could not cancel subscription with Stripe.") from exc
