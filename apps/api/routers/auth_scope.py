"""Bearer-token dependencies that pin every request to one credit account."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


bearer_scheme = HTTPBearer(auto_error=False)

_CHALLENGE = {"WWW-Authenticate": "Bearer"}


@dataclass(frozen=True)
class AuthContext:
    """The credit account a request acts for."""

    account_id: str
    email: Optional[str] = None
    expires_at: Optional[int] = None

    @property
    def user_id(self) -> str:
        # Credit accounts are keyed by the user row id.
        return self.account_id


def ensure_user_scope(auth: AuthContext, supplied_user_id: Optional[str]) -> str:
    """A ``user_id`` in the query or body may only repeat the session's own account."""
    supplied = (supplied_user_id or "").strip()
    if supplied and supplied != auth.account_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth.account_id


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.", headers=_CHALLENGE)

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc), headers=_CHALLENGE) from exc

    return AuthContext(
        account_id=str(claims["sub"]).strip(),
        email=str(claims.get("email") or "").strip() or None,
        expires_at=claims.get("exp"),
    )
