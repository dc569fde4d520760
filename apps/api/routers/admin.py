"""Operator endpoints guarded by a shared admin key."""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.rate_limit import rate_limit
from services.accounts import setup_admin_account
from services.errors import AuthenticationRequiredError, ServiceUnavailableError

router = APIRouter()
logger = logging.getLogger(__name__)


class SetupAccountRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    credits: Optional[int] = Field(default=None, ge=0, le=1_000_000)


def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    configured = (settings.ADMIN_API_KEY or "").strip()
    if not configured:
        raise ServiceUnavailableError("Admin API is not configured.")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode("utf-8"), configured.encode("utf-8")):
        logger.warning("admin_key_rejected")
        raise AuthenticationRequiredError("Invalid admin key.")


@router.post("/setup-account")
async def setup_account(
    request: SetupAccountRequest,
    _rate_limit: None = Depends(rate_limit("admin_setup", limit=10, window_seconds=3600)),
    _admin: None = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    """Grant the top tier for a year to the existing account with this email."""
    return await setup_admin_account(request.email, db, credits=request.credits)
