"""
Razorpay one-time plan purchases: order creation, payment verification and webhooks.

The client completes checkout in the browser with an order id created here,
then posts back ``order_id``/``payment_id``/``signature``. A payment is only
applied after the signature checks out and Razorpay reports it captured.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import require_razorpay_credentials, settings
from database import insert_ignore
from models.account import Account
from models.payment_record import PaymentRecord
from services.accounts import ensure_account, require_account
from services.errors import (
    ConfigurationError,
    InvalidPayloadError,
    InvalidPlanError,
    InvalidSignatureError,
    PaymentNotCapturedError,
    PaymentProviderError,
    ScopeMismatchError,
)
from services.plans import PAID_TIERS, PRO, STARTER, normalize_tier, plan_snapshot
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

PROVIDER = "razorpay"
CURRENCY = "INR"

# Rupees; Razorpay amounts are sent in paise.
PLAN_PRICES: Dict[str, int] = {STARTER: 799, PRO: 2499}
FIRST_TIME_STARTER_PRICE = 499
CAPTURED_STATUSES = frozenset({"captured", "authorized"})

PAYMENT_CAPTURED = "payment.captured"
SUBSCRIPTION_ACTIVATED = "subscription.activated"
SUBSCRIPTION_CHARGED = "subscription.charged"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"


def _credentials() -> Tuple[str, str]:
    try:
        return require_razorpay_credentials()
    except ValueError as exc:
        raise ConfigurationError("Payment gateway not configured.") from exc


async def _razorpay_request(method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    key_id, key_secret = _credentials()
    try:
        async with httpx.AsyncClient(
            base_url=settings.RAZORPAY_API_BASE,
            auth=(key_id, key_secret),
            timeout=float(settings.RAZORPAY_TIMEOUT_SECONDS),
        ) as client:
            response = await client.request(method, path, json=payload)
    except httpx.HTTPError as exc:
        logger.exception("razorpay_request_failed method=%s path=%s", method, path)
        raise PaymentProviderError() from exc

    if response.status_code >= 400:
        try:
            description = (response.json().get("error") or {}).get("description")
        except ValueError:
            description = None
        logger.error(
            "razorpay_request_rejected method=%s path=%s status=%s description=%s",
            method,
            path,
            response.status_code,
            description,
        )
        raise PaymentProviderError(description or "Payment provider request failed.")
    return response.json()


async def fetch_payment(payment_id: str) -> Dict[str, Any]:
    return await _razorpay_request("GET", f"/payments/{payment_id}")


async def fetch_order(order_id: str) -> Dict[str, Any]:
    return await _razorpay_request("GET", f"/orders/{order_id}")


def _validate_plan(plan: str) -> str:
    tier = normalize_tier(plan)
    if tier not in PLAN_PRICES or str(plan).strip().lower() != tier:
        raise InvalidPlanError(f"Invalid plan: {plan}", plan=plan)
    return tier


async def has_prior_payment(user_id: str, db: AsyncSession) -> bool:
    result = await db.execute(
        select(PaymentRecord.id)
        .where(PaymentRecord.user_id == user_id, PaymentRecord.status == "success")
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def quote_plan(user_id: str, plan: str, db: AsyncSession) -> Dict[str, Any]:
    """Price a plan for this user; first-time starter buyers get the intro price."""
    tier = _validate_plan(plan)
    display_price = PLAN_PRICES[tier]
    amount = display_price
    discount_applied = False
    if tier == STARTER and not await has_prior_payment(user_id, db):
        amount = FIRST_TIME_STARTER_PRICE
        discount_applied = True
    return {
        "plan": tier,
        "amount": amount,
        "display_price": display_price,
        "discount_applied": discount_applied,
    }


async def create_order(account: Account, plan: str, db: AsyncSession) -> Dict[str, Any]:
    quote = await quote_plan(account.id, plan, db)
    key_id, _ = _credentials()
    receipt = f"order_{account.id[:8]}_{int(time.time())}"
    order = await _razorpay_request(
        "POST",
        "/orders",
        {
            "amount": quote["amount"] * 100,
            "currency": CURRENCY,
            "receipt": receipt,
            "notes": {
                "user_id": account.id,
                "plan": quote["plan"],
                "amount_charged": str(quote["amount"]),
                "display_price": str(quote["display_price"]),
            },
        },
    )
    logger.info(
        "razorpay_order_created user=%s plan=%s order=%s amount=%s discount=%s",
        account.id,
        quote["plan"],
        order.get("id"),
        quote["amount"],
        quote["discount_applied"],
    )
    return {
        "order_id": order.get("id"),
        "amount": order.get("amount", quote["amount"] * 100),
        "currency": order.get("currency", CURRENCY),
        "key": key_id,
        "plan": quote["plan"],
        "display_price": quote["display_price"],
        "discount_applied": quote["discount_applied"],
        "prefill": {"email": account.email} if account.email else {},
    }


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _utf8(value: str) -> bytes:
    # JSON input may carry lone surrogates.
    return value.encode("utf-8", "surrogatepass")


def _signature_matches(expected: str, supplied: str) -> bool:
    return hmac.compare_digest(_utf8(expected), _utf8(supplied))


def verify_payment_signature(order_id: str, payment_id: str, signature: str) -> bool:
    _, key_secret = _credentials()
    expected = _hmac_hex(key_secret, _utf8(f"{order_id}|{payment_id}"))
    return _signature_matches(expected, str(signature or ""))


def verify_webhook_signature(body: bytes, signature: Optional[str]) -> None:
    secret = (settings.RAZORPAY_WEBHOOK_SECRET or "").strip()
    if not secret:
        raise ConfigurationError("Razorpay webhook secret not configured.")
    if not signature:
        raise InvalidSignatureError("No signature provided.")
    if not _signature_matches(_hmac_hex(secret, body), signature):
        logger.warning("razorpay_webhook_signature_invalid")
        raise InvalidSignatureError()


def _plan_from_notes(notes: Dict[str, Any]) -> str:
    plan = normalize_tier(notes.get("plan"))
    return plan if plan in PAID_TIERS else STARTER


def _plan_expiry() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=int(settings.PLAN_DURATION_DAYS))


async def apply_captured_payment(
    user_id: str,
    payment: Dict[str, Any],
    order_id: Optional[str],
    plan: str,
    db: AsyncSession,
) -> bool:
    """Record the payment and activate the plan; False if this payment was already applied.

    Does not commit; the caller owns the transaction.
    """
    await ensure_account(user_id, db, commit=False)
    inserted = await insert_ignore(
        db,
        PaymentRecord,
        {
            "user_id": user_id,
            "provider": PROVIDER,
            "payment_id": payment["id"],
            "order_id": order_id,
            "plan": plan,
            "amount": int(payment.get("amount") or 0),
            "currency": payment.get("currency") or CURRENCY,
            "status": "success",
        },
        conflict_columns=["payment_id"],
    )
    if not inserted:
        logger.info("razorpay_payment_already_processed user=%s payment=%s", user_id, payment["id"])
        return False

    await activate_plan(
        db,
        user_id,
        plan,
        _plan_expiry(),
        razorpay_payment_id=payment["id"],
        razorpay_order_id=order_id,
    )
    return True


async def verify_and_activate(
    user_id: str,
    order_id: str,
    payment_id: str,
    signature: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    if not verify_payment_signature(order_id, payment_id, signature):
        logger.warning("razorpay_verify_signature_invalid user=%s order=%s", user_id, order_id)
        raise InvalidSignatureError("Invalid payment signature.")

    payment = await fetch_payment(payment_id)
    if payment.get("status") not in CAPTURED_STATUSES:
        raise PaymentNotCapturedError(status=payment.get("status"))

    order = await fetch_order(order_id)
    notes = order.get("notes") or {}
    if notes.get("user_id") and notes["user_id"] != user_id:
        raise ScopeMismatchError("Order belongs to a different user.")
    plan = _plan_from_notes(notes)

    try:
        applied = await apply_captured_payment(user_id, {**payment, "id": payment_id}, order_id, plan, db)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    account = await require_account(user_id, db)
    if applied:
        logger.info("razorpay_plan_activated user=%s plan=%s payment=%s", user_id, plan, payment_id)
    return {
        "success": True,
        "already_processed": not applied,
        "message": f"Welcome to {plan.capitalize()}!" if applied else "Payment already processed.",
        "plan": plan_snapshot(account),
    }


def _entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    return ((payload.get(name) or {}).get("entity")) or {}


def _subscription_expiry(subscription: Dict[str, Any]) -> datetime:
    current_end = subscription.get("current_end")
    if current_end:
        return datetime.fromtimestamp(int(current_end), tz=timezone.utc)
    return _plan_expiry()


async def _on_payment_captured(payload: Dict[str, Any], db: AsyncSession) -> None:
    payment = _entity(payload, "payment")
    notes = payment.get("notes") or {}
    user_id = notes.get("user_id")
    if not user_id or not payment.get("id"):
        logger.info("razorpay_payment_without_user payment=%s", payment.get("id"))
        return
    await apply_captured_payment(user_id, payment, payment.get("order_id"), _plan_from_notes(notes), db)


async def _subscription_user(subscription: Dict[str, Any], db: AsyncSession) -> Optional[str]:
    user_id = (subscription.get("notes") or {}).get("user_id")
    if user_id:
        return user_id
    if subscription.get("id"):
        return await find_user_by_subscription(db, PROVIDER, subscription["id"])
    return None


async def _on_subscription_activated(payload: Dict[str, Any], db: AsyncSession) -> None:
    subscription = _entity(payload, "subscription")
    subscription_id = subscription.get("id")
    user_id = await _subscription_user(subscription, db)
    if not user_id or not subscription_id:
        logger.info("razorpay_subscription_without_user subscription=%s", subscription_id)
        return
    expiry = _subscription_expiry(subscription)
    await ensure_account(user_id, db, commit=False)
    if await event_seen(db, PROVIDER, SUBSCRIPTION_CANCELLED, subscription_id):
        logger.info("razorpay_activation_after_cancel user=%s subscription=%s", user_id, subscription_id)
        await record_cancelled_subscription(db, user_id, PROVIDER, expiry)
        return
    await activate_plan(
        db,
        user_id,
        _plan_from_notes(subscription.get("notes") or {}),
        expiry,
        razorpay_subscription_id=subscription_id,
    )


async def _on_subscription_charged(payload: Dict[str, Any], db: AsyncSession) -> None:
    subscription = _entity(payload, "subscription")
    user_id = await _subscription_user(subscription, db)
    if not user_id:
        logger.info("razorpay_charge_without_user subscription=%s", subscription.get("id"))
        return
    await ensure_account(user_id, db, commit=False)
    await confirm_renewal(db, user_id, _subscription_expiry(subscription))


async def _on_subscription_cancelled(payload: Dict[str, Any], db: AsyncSession) -> None:
    subscription = _entity(payload, "subscription")
    subscription_id = subscription.get("id")
    user_id = await _subscription_user(subscription, db)
    if not user_id or not subscription_id:
        return
    await downgrade_to_free(db, user_id, PROVIDER, subscription_id)


_HANDLERS = {
    PAYMENT_CAPTURED: (_on_payment_captured, "payment"),
    SUBSCRIPTION_ACTIVATED: (_on_subscription_activated, "subscription"),
    SUBSCRIPTION_CHARGED: (_on_subscription_charged, "subscription"),
    SUBSCRIPTION_CANCELLED: (_on_subscription_cancelled, "subscription"),
}


async def process_razorpay_webhook(
    body: bytes,
    signature: Optional[str],
    event_id: Optional[str],
    db: AsyncSession,
) -> Dict[str, Any]:
    """Verify, parse and apply one Razorpay webhook delivery exactly once."""
    verify_webhook_signature(body, signature)
    try:
        event = json.loads(body)
    except ValueError as exc:
        raise InvalidPayloadError() from exc
    if not isinstance(event, dict):
        raise InvalidPayloadError()

    event_type = str(event.get("event") or "")
    registered = _HANDLERS.get(event_type)
    if registered is None:
        logger.info("razorpay_event_ignored type=%s", event_type)
        return {"received": True, "ignored": True}

    handler, entity_name = registered
    payload = event.get("payload") or {}
    entity = _entity(payload, entity_name)
    object_id = entity.get("id")
    # Subscription charges repeat per cycle, so the payment distinguishes them.
    if event_type == SUBSCRIPTION_CHARGED:
        charge_id = _entity(payload, "payment").get("id") or event.get("created_at")
        fallback_id = f"{event_type}:{object_id}:{charge_id}"
    else:
        fallback_id = f"{event_type}:{object_id}"

    async def _apply() -> None:
        await handler(payload, db)

    return await apply_webhook_event(
        db,
        provider=PROVIDER,
        event_id=event_id or fallback_id,
        event_type=event_type,
        object_id=object_id,
        user_id=(entity.get("notes") or {}).get("user_id"),
        handler=_apply,
    )


async def cancel_at_cycle_end(subscription_id: str) -> None:
    """Stop future Razorpay charges for a user-cancelled subscription; access runs to cycle end."""
    await _razorpay_request("POST", f"/subscriptions/{subscription_id}/cancel", {"cancel_at_cycle_end": 1})
    logger.info("razorpay_cancel_requested subscription=%s", subscription_id)
