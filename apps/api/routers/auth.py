"""
Authentication router: current account profile and session lifecycle.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from services.credits import get_credit_stats
from services.permissions import ROLE_PERMISSIONS

router = APIRouter()


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    role: str
    parent_id: Optional[str] = None
    is_super_admin: bool = False
    permissions: list[str] = []
    credits: Dict[str, Any] = {}


@router.get("/me", response_model=CurrentUserResponse)
async def get_me(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Current account, its permissions and the quota it draws from."""
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        parent_id=user.parent_id,
        is_super_admin=user.is_super_admin,
        permissions=sorted(ROLE_PERMISSIONS.get(user.role, frozenset())),
        credits=await get_credit_stats(user, db),
    )


@router.post("/logout")
async def logout(_user: User = Depends(get_current_user)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
