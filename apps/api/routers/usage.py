"""Daily usage counter endpoints for count-metered features."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services.accounts import ensure_account
from services.errors import InternalServiceError
from services.usage import check_usage, get_daily_limit, get_usage_stats, record_usage

router = APIRouter()
logger = logging.getLogger(__name__)


class UsageCheckRequest(BaseModel):
    feature: str
    user_id: Optional[str] = None


class UsageRecordRequest(BaseModel):
    feature: str
    user_id: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=128)


@router.post("/check")
async def check_usage_endpoint(
    request: UsageCheckRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await check_usage(user_id, request.feature, db)


@router.post("/record")
async def record_usage_endpoint(
    request: UsageRecordRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    get_daily_limit(request.feature)
    try:
        await ensure_account(user_id, db, email=auth.email)
        return await record_usage(user_id, request.feature, db, idempotency_key=request.idempotency_key)
    except HTTPException:
        raise
    except SQLAlchemyError:
        logger.exception("Failed to record usage user=%s feature=%s", user_id, request.feature)
        raise InternalServiceError("Failed to record usage.")


@router.get("/stats")
async def usage_stats(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return {"user_id": scoped_user_id, "features": await get_usage_stats(scoped_user_id, db)}
