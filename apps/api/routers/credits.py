"""Credit ledger endpoints."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services.accounts import ensure_account, require_account
from services.credits import UNLIMITED, get_credit_summary, use_credits
from services.entitlements import run_with_account_bootstrap
from services.errors import InternalServiceError
from services.plans import is_paid

router = APIRouter()
logger = logging.getLogger(__name__)


class UseCreditsRequest(BaseModel):
    feature: str
    user_id: Optional[str] = None


@router.post("/use")
async def use_credits_endpoint(
    request: UseCreditsRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    try:
        return await run_with_account_bootstrap(
            user_id, db, lambda: use_credits(user_id, request.feature, db)
        )
    except HTTPException:
        raise
    except SQLAlchemyError:
        logger.exception("Failed to use credits user=%s feature=%s", user_id, request.feature)
        raise InternalServiceError("Failed to use credits.")


@router.get("/balance")
async def credit_balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_account(scoped_user_id, db, email=auth.email)
    account = await require_account(scoped_user_id, db)
    unlimited = is_paid(account)
    return {
        "credits": UNLIMITED if unlimited else int(account.credits or 0),
        "is_admin": bool(account.is_admin),
        "is_paid": unlimited,
        "unlimited": unlimited,
    }


@router.get("/summary")
async def credit_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_account(scoped_user_id, db, email=auth.email)
    return await get_credit_summary(scoped_user_id, db)
