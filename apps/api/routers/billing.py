"""Plan purchase router: Stripe checkout, Razorpay orders, and cancellation."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import cancel_subscription, ensure_account, require_account
from services.errors import InternalServiceError
from services import razorpay_billing, stripe_billing

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    plan: str
    user_id: Optional[str] = None


class RazorpayOrderRequest(BaseModel):
    plan: str
    user_id: Optional[str] = None


class RazorpayVerifyRequest(BaseModel):
    order_id: str = Field(min_length=1)
    payment_id: str = Field(min_length=1)
    signature: str = Field(min_length=1)
    user_id: Optional[str] = None


class CancelRequest(BaseModel):
    user_id: Optional[str] = None


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Start a Stripe subscription checkout for ``plan``."""
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_account(user_id, db, email=auth.email)
    account = await require_account(user_id, db)
    return await stripe_billing.create_checkout_session(account, request.plan)


@router.post("/razorpay/order")
async def create_razorpay_order(
    request: RazorpayOrderRequest,
    _rate_limit: None = Depends(rate_limit("billing_razorpay_order", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_account(user_id, db, email=auth.email)
    account = await require_account(user_id, db)
    return await razorpay_billing.create_order(account, request.plan, db)


@router.post("/razorpay/verify")
async def verify_razorpay_payment(
    request: RazorpayVerifyRequest,
    _rate_limit: None = Depends(rate_limit("billing_razorpay_verify", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Verify a completed Razorpay checkout and activate the purchased plan."""
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    try:
        return await razorpay_billing.verify_and_activate(
            user_id,
            request.order_id,
            request.payment_id,
            request.signature,
            db,
        )
    except HTTPException:
        raise
    except SQLAlchemyError:
        logger.exception("Payment verification failed user=%s payment=%s", user_id, request.payment_id)
        raise InternalServiceError("Payment verification failed.")


@router.post("/subscription/cancel")
async def cancel_subscription_endpoint(
    request: CancelRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Soft cancel: access continues until the current plan expires."""
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    account = await require_account(user_id, db)
    if account.stripe_subscription_id:
        if settings.STRIPE_SECRET_KEY:
            await stripe_billing.cancel_at_period_end(account.stripe_subscription_id)
        else:
            logger.warning(
                "Stripe not configured; subscription=%s left renewing for user=%s",
                account.stripe_subscription_id,
                user_id,
            )
    if account.razorpay_subscription_id:
        if settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET:
            await razorpay_billing.cancel_at_cycle_end(account.razorpay_subscription_id)
        else:
            logger.warning(
                "Razorpay not configured; subscription=%s left renewing for user=%s",
                account.razorpay_subscription_id,
                user_id,
            )
    return await cancel_subscription(user_id, db)
