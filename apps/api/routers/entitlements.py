"""Entitlement gateway endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_tier
from services.entitlements import authorize_feature, run_with_account_bootstrap
from services.errors import InternalServiceError, InvalidPlanError, UsageLimitExceededError
from services.plans import parse_tier

router = APIRouter()
logger = logging.getLogger(__name__)


class AuthorizeRequest(BaseModel):
    feature: str


@router.post("/authorize")
async def authorize(
    request: AuthorizeRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Allow or deny one invocation; credit-metered features are charged here."""
    try:
        decision = await run_with_account_bootstrap(
            auth.user_id, db, lambda: authorize_feature(auth.user_id, request.feature, db)
        )
    except HTTPException:
        raise
    except SQLAlchemyError:
        logger.exception("Entitlement check failed user=%s feature=%s", auth.user_id, request.feature)
        raise InternalServiceError("Failed to check entitlement.")

    if not decision.allowed:
        raise UsageLimitExceededError(requires_upgrade=True, **decision.to_dict())
    return decision.to_dict()


@router.get("/tier/{required_tier}")
async def check_tier(
    required_tier: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        tier = parse_tier(required_tier)
    except ValueError as exc:
        raise InvalidPlanError(str(exc), plan=required_tier) from exc
    await require_tier(tier)(auth=auth, db=db)
    return {"allowed": True, "required_tier": tier}
