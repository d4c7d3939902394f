"""Sub-account workflows. Each account created by a non super admin costs one user credit."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
import uuid

from fastapi import HTTPException
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.email_log import EmailLog
from models.task import Task
from models.user import SUPER_ADMIN_ROLE, USER_ROLES, VISITOR_ROLE, User
from services.credits import (
    CREDIT_MODULES,
    consume_credits,
    reject_insufficient_credits,
    release_credits,
    resolve_effective_user,
    set_credit_allocation,
)

logger = logging.getLogger(__name__)


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "parent_id": user.parent_id,
        "is_super_admin": user.is_super_admin,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


async def get_user_or_404(user_id: str, db: AsyncSession) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _resolve_role(requested: Optional[str]) -> str:
    role = (requested or VISITOR_ROLE).strip()
    if role == SUPER_ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="The super_admin role cannot be assigned.")
    if role not in USER_ROLES:
        raise HTTPException(status_code=422, detail=f"Unknown role: {role}")
    return role


async def create_user_service(creator: User, payload: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    """Create a sub-account under the creator's billing account."""
    email = str(payload["email"]).strip().lower()
    role = _resolve_role(payload.get("role"))
    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="A user with this email already exists.")

    creator_is_super_admin = creator.is_super_admin
    credits = payload.get("credits") or {}
    try:
        if not creator_is_super_admin:
            if not await consume_credits(creator, "user", db):
                await reject_insufficient_credits(creator, "user", db, message="Insufficient credits to create user")
            parent_id = (await resolve_effective_user(creator, db)).id
        else:
            parent_id = creator.id

        user = User(
            id=str(uuid.uuid4()),
            email=email,
            name=payload.get("name"),
            role=role,
            parent_id=parent_id,
        )
        db.add(user)
        await db.flush()

        if creator_is_super_admin and role == VISITOR_ROLE:
            for module in CREDIT_MODULES:
                if module in credits and credits[module] is not None:
                    await set_credit_allocation(user.id, module, int(credits[module]), db, reset_used=True)
        await db.commit()
    except HTTPException:
        raise
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(status_code=409, detail="A user with this email already exists.") from exc
    except Exception:
        await db.rollback()
        raise

    await db.refresh(user)
    logger.info(
        "user_created user=%s creator=%s parent=%s role=%s",
        user.id,
        creator.id,
        user.parent_id,
        user.role,
    )
    return serialize_user(user)


async def delete_user_service(actor: User, user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Delete an account, refunding the quota its existence and its resources consumed."""
    if user_id == actor.id:
        raise HTTPException(status_code=403, detail="You cannot delete your own account.")
    target = await get_user_or_404(user_id, db)
    if target.is_super_admin:
        raise HTTPException(status_code=403, detail="Super admin accounts cannot be deleted.")
    if not actor.is_super_admin and target.parent_id != actor.id:
        raise HTTPException(status_code=403, detail="You do not have permission to delete this user.")

    try:
        billing_account = await resolve_effective_user(target, db)
        if target.parent_id:
            parent = await db.get(User, target.parent_id)
            if parent is not None and not parent.is_super_admin:
                await release_credits(parent, "user", db)

        if not billing_account.is_super_admin and billing_account.id != target.id:
            task_count = await db.execute(
                select(func.count(Task.id)).where(Task.created_by == target.id, Task.deleted_at.is_(None))
            )
            email_count = await db.execute(
                select(func.count(EmailLog.id)).where(EmailLog.sent_by == target.id, EmailLog.status == "sent")
            )
            tasks_to_release = int(task_count.scalar() or 0)
            emails_to_release = int(email_count.scalar() or 0)
            if tasks_to_release:
                await release_credits(billing_account, "task", db, amount=tasks_to_release)
            if emails_to_release:
                await release_credits(billing_account, "email", db, amount=emails_to_release)

        await db.execute(
            update(User)
            .where(User.parent_id == target.id)
            .values(parent_id=None)
            .execution_options(synchronize_session=False)
        )
        await db.delete(target)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("user_deleted user=%s actor=%s", user_id, actor.id)
    return {"message": "User deleted successfully", "id": user_id}
