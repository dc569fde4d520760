"""Account bootstrap endpoint."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services.accounts import ensure_account

router = APIRouter()


class EnsureAccountRequest(BaseModel):
    user_id: Optional[str] = None


@router.post("/ensure")
async def ensure_account_endpoint(
    request: EnsureAccountRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Idempotently create the caller's account with signup defaults."""
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    created = await ensure_account(user_id, db, email=auth.email)
    return {"user_id": user_id, "created": created}
