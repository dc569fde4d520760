"""
Bearer session tokens.

The identity provider's user id is the token subject and the only account key
the API trusts. Tokens are bound to this API as issuer and to the app as
audience so a token minted for another service with the same secret is refused.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from config import settings


SESSION_TOKEN_TYPE = "shortsos_session"
REQUIRED_CLAIMS = ("sub", "iat", "exp", "iss", "aud")


def _ttl(expires_hours: Optional[int]) -> timedelta:
    hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    return timedelta(hours=max(hours, 1))


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a session token for ``user_id``; returns the token and its expiry timestamp."""
    issued_at = datetime.now(timezone.utc)
    expires_at = int((issued_at + _ttl(expires_hours)).timestamp())
    claims: Dict[str, Any] = {
        "sub": user_id,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email.strip().lower()
    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Return the verified claims of a session token; raises ValueError otherwise."""
    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"require_" + name: True for name in REQUIRED_CLAIMS},
        )
    except ExpiredSignatureError as exc:
        raise ValueError("Session token expired.") from exc
    except JWTClaimsError as exc:
        raise ValueError("Session token was not issued for this API.") from exc
    except JWTError as exc:
        raise ValueError("Invalid session token.") from exc

    if claims.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(claims.get("sub") or "").strip():
        raise ValueError("Session token missing subject.")
    return claims
