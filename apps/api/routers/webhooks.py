"""
Payment provider webhooks.

Both endpoints read the raw body, verify the provider signature before
parsing, and acknowledge with ``{"received": true}``. Any failure after
verification, including a failed call back to the provider, rolls back and
returns 500 so the provider retries.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.errors import InternalServiceError, PaymentProviderError
from services.razorpay_billing import process_razorpay_webhook
from services.stripe_billing import process_stripe_event, verify_webhook

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await request.body()
    event = verify_webhook(payload, request.headers.get("stripe-signature"))
    try:
        return await process_stripe_event(event, db)
    except PaymentProviderError:
        logger.exception("Stripe lookup failed event=%s type=%s", event.get("id"), event.get("type"))
        raise InternalServiceError("Webhook processing failed.")
    except HTTPException:
        raise
    except SQLAlchemyError:
        logger.exception("Stripe webhook failed event=%s type=%s", event.get("id"), event.get("type"))
        raise InternalServiceError("Webhook processing failed.")


@router.post("/razorpay")
async def razorpay_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    body = await request.body()
    try:
        return await process_razorpay_webhook(
            body,
            request.headers.get("x-razorpay-signature"),
            request.headers.get("x-razorpay-event-id"),
            db,
        )
    except PaymentProviderError:
        logger.exception("Razorpay webhook provider call failed")
        raise InternalServiceError("Webhook processing failed.")
    except HTTPException:
        raise
    except SQLAlchemyError:
        logger.exception("Razorpay webhook failed")
        raise InternalServiceError("Webhook processing failed.")
