"""Authentication dependencies resolving the acting portal account."""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from services.permissions import has_permission
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve token claims from the Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email)


async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load the account named by the session token."""
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="Session account no longer exists.")
    return user


def require_permission(permission: str) -> Callable:
    """Return a dependency that rejects accounts lacking `permission`."""

    async def _dependency(user: User = Depends(get_current_user)) -> User:
        if not has_permission(user, permission):
            raise HTTPException(status_code=403, detail=f"You do not have permission to {permission}.")
        return user

    return _dependency
