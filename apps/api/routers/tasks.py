"""Tasks router."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user, require_permission
from routers.rate_limit import rate_limit
from services.tasks import (
    create_task_service,
    delete_task_service,
    get_task_service,
    list_tasks_service,
    update_task_service,
)

router = APIRouter()

TaskStatus = Literal["pending", "in_progress", "completed", "cancelled"]
TaskPriority = Literal["low", "medium", "high", "urgent"]


class CreateTaskRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    status: TaskStatus = "pending"
    priority: TaskPriority = "medium"
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class UpdateTaskRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@router.post("", status_code=201)
async def create_task(
    request: CreateTaskRequest,
    _rate_limit: None = Depends(rate_limit("task_create", limit=120, window_seconds=3600)),
    user: User = Depends(require_permission("create tasks")),
    db: AsyncSession = Depends(get_db),
):
    task = await create_task_service(user, request.model_dump(), db)
    return {"message": "Task created successfully", "data": task}


@router.get("")
async def list_tasks(
    status: Optional[TaskStatus] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=15, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_tasks_service(user, db, status=status, page=page, limit=limit)


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {"data": await get_task_service(user, task_id, db)}


@router.patch("/{task_id}")
async def update_task(
    task_id: str,
    request: UpdateTaskRequest,
    user: User = Depends(require_permission("edit tasks")),
    db: AsyncSession = Depends(get_db),
):
    task = await update_task_service(user, task_id, request.model_dump(exclude_unset=True), db)
    return {"message": "Task updated successfully", "data": task}


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    user: User = Depends(require_permission("delete tasks")),
    db: AsyncSession = Depends(get_db),
):
    return await delete_task_service(user, task_id, db)
