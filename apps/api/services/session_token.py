"""Signed bearer tokens that bind API calls to one credit account."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "tradeit_session"
SESSION_TOKEN_ISSUER = "tradeit-credits"

_DECODE_OPTIONS = {"require_exp": True, "require_sub": True, "require_iat": True}


def _ttl(expires_hours: Optional[int]) -> timedelta:
    hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    return timedelta(hours=max(hours, 1))


def create_session_token(
    account_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a session token for ``account_id``; returns the token and its expiry."""
    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + _ttl(expires_hours)
    claims: Dict[str, Any] = {
        "iss": SESSION_TOKEN_ISSUER,
        "sub": account_id,
        "type": SESSION_TOKEN_TYPE,
        "jti": uuid.uuid4().hex,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "account_id": account_id,
        "expires_at": claims["exp"],
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Return the verified claims; any token that cannot name an account raises ValueError."""
    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=SESSION_TOKEN_ISSUER,
            options=_DECODE_OPTIONS,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if claims.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(claims.get("sub") or "").strip():
        raise ValueError("Session token missing account subject.")
    return claims
