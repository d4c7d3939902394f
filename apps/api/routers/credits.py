"""Credits router: quota overview and super admin provisioning."""

from __future__ import annotations

import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from services.credits import CREDIT_MODULES, get_credit_stats, set_credit_allocation
from services.users import get_user_or_404

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditAllocationRequest(BaseModel):
    credits: Dict[str, int] = Field(default_factory=dict)
    reset_used: bool = False

    @field_validator("credits")
    @classmethod
    def _known_modules(cls, value: Dict[str, int]) -> Dict[str, int]:
        unknown = sorted(set(value) - set(CREDIT_MODULES))
        if unknown:
            raise ValueError(f"Unknown credit modules: {', '.join(unknown)}")
        if any(amount < 0 for amount in value.values()):
            raise ValueError("Credit allocations must be zero or greater.")
        return value


@router.get("")
async def credits_summary(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_stats(user, db)


@router.put("/{user_id}")
async def update_credit_allocation(
    user_id: str,
    request: CreditAllocationRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not user.is_super_admin:
        raise HTTPException(status_code=403, detail="Only super admins can allocate credits.")

    target = await get_user_or_404(user_id, db)
    try:
        for module, amount in request.credits.items():
            await set_credit_allocation(target.id, module, amount, db, reset_used=request.reset_used)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("credit_allocation_updated target=%s by=%s modules=%s", target.id, user.id, request.credits)
    return await get_credit_stats(target, db)
