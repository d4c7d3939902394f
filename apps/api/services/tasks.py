"""Task workflows. Creation consumes a task credit, deletion refunds it to the creator."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional
import uuid

from fastapi import HTTPException
from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.task import Task
from models.task_comment import TaskComment, build_system_comment
from models.user import User
from services.credits import (
    consume_credits,
    reject_insufficient_credits,
    release_credits,
    resolve_effective_user,
)
from services.permissions import has_permission
from services.task_events import dispatch_task_event

logger = logging.getLogger(__name__)

TRACKED_TASK_FIELDS = ("status", "priority", "assigned_to", "due_date")


def serialize_task(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "due_date": task.due_date.isoformat() if task.due_date else None,
        "created_by": task.created_by,
        "assigned_to": task.assigned_to,
        "metadata": task.metadata_json or {},
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
        "created_at": task.created_at.isoformat() if task.created_at else None,
    }


async def _get_live_task(task_id: str, db: AsyncSession) -> Task:
    result = await db.execute(select(Task).where(Task.id == task_id, Task.deleted_at.is_(None)))
    task = result.scalar_one_or_none()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


async def _assignee_exists(user_id: str, db: AsyncSession) -> bool:
    result = await db.execute(select(User.id).where(User.id == user_id))
    return result.scalar_one_or_none() is not None


async def create_task_service(actor: User, payload: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    actor_id = actor.id
    assigned_to = payload.get("assigned_to")
    if assigned_to and not await _assignee_exists(assigned_to, db):
        raise HTTPException(status_code=422, detail="assigned_to does not reference an existing user.")

    try:
        if not await consume_credits(actor, "task", db):
            await reject_insufficient_credits(actor, "task", db, message="Insufficient credits to create task")

        task = Task(
            id=str(uuid.uuid4()),
            title=payload["title"],
            description=payload.get("description"),
            status=payload.get("status") or "pending",
            priority=payload.get("priority") or "medium",
            due_date=payload.get("due_date"),
            created_by=actor_id,
            assigned_to=assigned_to,
            metadata_json=payload.get("metadata") or {},
        )
        if task.status == "completed":
            task.completed_at = datetime.now(timezone.utc)
        db.add(task)
        await db.flush()
        db.add(build_system_comment(task.id, actor_id, "created", title=task.title))
        await db.commit()
    except HTTPException:
        raise
    except Exception:
        # Rollback expires ORM state; log with plain values only.
        await db.rollback()
        logger.exception("task_create_failed user=%s", actor_id)
        raise

    await db.refresh(task)
    logger.info("task_created task=%s user=%s title=%s", task.id, actor_id, task.title)
    dispatch_task_event(task.id, actor_id, "created")
    return serialize_task(task)


async def list_tasks_service(
    actor: User,
    db: AsyncSession,
    *,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 15,
) -> Dict[str, Any]:
    filters = [Task.deleted_at.is_(None)]
    if not has_permission(actor, "view all tasks"):
        filters.append(or_(Task.created_by == actor.id, Task.assigned_to == actor.id))
    if status:
        filters.append(Task.status == status)

    total = await db.execute(select(func.count(Task.id)).where(*filters))
    result = await db.execute(
        select(Task)
        .where(*filters)
        .order_by(Task.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "items": [serialize_task(task) for task in result.scalars().all()],
        "total_count": int(total.scalar() or 0),
        "page": page,
        "limit": limit,
    }


async def get_task_service(actor: User, task_id: str, db: AsyncSession) -> Dict[str, Any]:
    task = await _get_live_task(task_id, db)
    visible = has_permission(actor, "view all tasks") or actor.id in (task.created_by, task.assigned_to)
    if not visible:
        raise HTTPException(status_code=403, detail="You do not have access to this task.")
    return serialize_task(task)


async def _assignee_label(user_id: Optional[str], db: AsyncSession) -> str:
    if not user_id:
        return "Unassigned"
    result = await db.execute(select(User).where(User.id == user_id))
    assignee = result.scalar_one_or_none()
    if assignee is None:
        return "Unassigned"
    return assignee.name or assignee.email


async def _change_comments(task: Task, before: Dict[str, Any], actor_id: str, db: AsyncSession) -> List[TaskComment]:
    comments = []
    if task.status != before["status"]:
        comments.append(
            build_system_comment(
                task.id, actor_id, "status_changed", status=task.status, old_status=before["status"]
            )
        )
    if task.priority != before["priority"]:
        comments.append(
            build_system_comment(
                task.id, actor_id, "priority_changed", priority=task.priority, old_priority=before["priority"]
            )
        )
    if task.assigned_to != before["assigned_to"]:
        comments.append(
            build_system_comment(
                task.id, actor_id, "assigned", assignee=await _assignee_label(task.assigned_to, db)
            )
        )
    if task.due_date != before["due_date"]:
        label = task.due_date.strftime("%b %d, %Y") if task.due_date else "No due date"
        comments.append(build_system_comment(task.id, actor_id, "due_date_changed", due_date=label))
    return comments


async def update_task_service(
    actor: User,
    task_id: str,
    changes: Dict[str, Any],
    db: AsyncSession,
) -> Dict[str, Any]:
    """Apply a partial update, recording a system comment per significant change.

    Only fields present in `changes` are touched. Moving into `completed` stamps
    `completed_at`; moving out of it clears the stamp.
    """
    actor_id = actor.id
    task = await _get_live_task(task_id, db)
    if not (actor.is_super_admin or actor_id in (task.created_by, task.assigned_to)):
        raise HTTPException(status_code=403, detail="You do not have permission to update this task.")

    if changes.get("assigned_to") and not await _assignee_exists(changes["assigned_to"], db):
        raise HTTPException(status_code=422, detail="assigned_to does not reference an existing user.")

    before = {field: getattr(task, field) for field in TRACKED_TASK_FIELDS}
    try:
        for field in ("title", "status", "priority"):
            if changes.get(field) is not None:
                setattr(task, field, changes[field])
        for field in ("description", "due_date", "assigned_to"):
            if field in changes:
                setattr(task, field, changes[field])
        if "metadata" in changes:
            task.metadata_json = changes["metadata"] or {}

        if task.status != before["status"]:
            if task.status == "completed" and not task.completed_at:
                task.completed_at = datetime.now(timezone.utc)
            elif task.status != "completed":
                task.completed_at = None

        comments = await _change_comments(task, before, actor_id, db)
        for comment in comments:
            db.add(comment)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("task_update_failed task=%s user=%s", task_id, actor_id)
        raise

    await db.refresh(task)
    logger.info(
        "task_updated task=%s user=%s changes=%s",
        task_id,
        actor_id,
        ",".join(comment.metadata_json["action"] for comment in comments) or "fields",
    )
    dispatch_task_event(task_id, actor_id, "updated")
    return serialize_task(task)


async def delete_task_service(actor: User, task_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Soft-delete a task and refund one task credit to its original creator."""
    task = await _get_live_task(task_id, db)
    creator_result = await db.execute(select(User).where(User.id == task.created_by))
    creator = creator_result.scalar_one_or_none()

    allowed = actor.is_super_admin or actor.id == task.created_by
    if not allowed and creator is not None:
        billing_account = await resolve_effective_user(creator, db)
        allowed = billing_account.id == actor.id
    if not allowed:
        raise HTTPException(status_code=403, detail="You do not have permission to delete this task.")

    try:
        task.deleted_at = datetime.now(timezone.utc)
        if creator is not None:
            await release_credits(creator, "task", db)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("task_deleted task=%s user=%s creator=%s", task_id, actor.id, task.created_by)
    return {"message": "Task deleted successfully", "id": task_id}
