"""
Current-user endpoint: the caller's account and plan state.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.accounts import ensure_account, require_account
from services.plans import plan_snapshot

router = APIRouter()


class CurrentUserResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    tier: str
    subscription_tier: str
    subscription_status: str
    plan_expiry: Optional[str] = None
    is_paid: bool
    is_admin: bool
    days_until_expiry: Optional[int] = None
    expiring_soon: bool
    credits: int


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's plan snapshot, creating the account on first sight."""
    await ensure_account(auth.user_id, db, email=auth.email)
    account = await require_account(auth.user_id, db)
    return CurrentUserResponse(
        user_id=account.id,
        email=account.email,
        credits=int(account.credits or 0),
        **plan_snapshot(account),
    )
