"""Sub-account management router."""

from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import require_permission
from routers.rate_limit import rate_limit
from services.users import create_user_service, delete_user_service

router = APIRouter()


class CreateUserRequest(BaseModel):
    email: EmailStr
    name: Optional[str] = Field(default=None, max_length=255)
    role: Optional[str] = None
    credits: Optional[Dict[str, int]] = None


@router.post("", status_code=201)
async def create_user(
    request: CreateUserRequest,
    _rate_limit: None = Depends(rate_limit("user_create", limit=30, window_seconds=3600)),
    user: User = Depends(require_permission("create users")),
    db: AsyncSession = Depends(get_db),
):
    created = await create_user_service(user, request.model_dump(), db)
    return {"message": "User created successfully", "data": created}


@router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    user: User = Depends(require_permission("delete users")),
    db: AsyncSession = Depends(get_db),
):
    return await delete_user_service(user, user_id, db)
