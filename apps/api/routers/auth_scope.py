"""Authentication and tier-gating dependencies for user-scoped routes."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.accounts import get_account
from services.errors import AuthenticationRequiredError, ScopeMismatchError, UpgradeRequiredError
from services.plans import can_access_tier, get_tier, parse_tier
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return the authenticated user_id; a body/query user_id may only repeat it."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise ScopeMismatchError()
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the caller from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise AuthenticationRequiredError("Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise AuthenticationRequiredError(str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


def require_tier(required_tier: str):
    """Dependency factory: reject callers whose effective tier ranks below ``required_tier``."""
    tier = parse_tier(required_tier)

    async def _dependency(
        auth: AuthContext = Depends(get_auth_context),
        db: AsyncSession = Depends(get_db),
    ) -> AuthContext:
        account = await get_account(auth.user_id, db)
        if not can_access_tier(account, tier):
            raise UpgradeRequiredError(
                current_tier=get_tier(account),
                required_tier=tier,
                message=f"This feature requires the {tier} plan.",
            )
        return auth

    return _dependency
