"""Signed bearer tokens identifying the portal account behind a request."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "portal_session"


@dataclass
class SessionClaims:
    user_id: str
    email: Optional[str]
    expires_at: int


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Issue a token for an existing account. Returns token and expiry (unix seconds)."""
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    expires_at = int((issued_at + lifetime).timestamp())
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email
    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
    }


def decode_session_token(token: str) -> SessionClaims:
    """Validate signature, expiry and token type. Raises ValueError when any check fails."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    user_id = str(payload.get("sub", "")).strip()
    if not user_id:
        raise ValueError("Session token missing subject.")

    return SessionClaims(
        user_id=user_id,
        email=payload.get("email") or None,
        expires_at=int(payload.get("exp", 0)),
    )
