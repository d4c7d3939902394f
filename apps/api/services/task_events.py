"""Task event queue helpers (Redis/RQ) and the worker-side job."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.task import Task
from models.user import User
from services.emails import MailTransportError, OutboundEmail, deliver_email

logger = logging.getLogger(__name__)

TASK_EVENTS_QUEUE_NAME = "task_events"

EVENT_SUBJECTS = {
    "created": "New task assigned to you: {title}",
    "updated": "Task updated: {title}",
}


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_task_events_queue() -> Queue:
    return Queue(
        name=TASK_EVENTS_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_task_event_job(task_id: str, actor_id: str, action: str) -> Optional[Job]:
    """Enqueue post-commit processing for a task. Returns None when events are disabled."""
    if not settings.TASK_EVENTS_ENABLED:
        return None
    queue = get_task_events_queue()
    return queue.enqueue(
        "services.task_events.process_task_event_job",
        task_id,
        actor_id,
        action,
        retry=Retry(max=3, interval=[10, 30, 120]),
        job_timeout=300,
        result_ttl=3600,
        failure_ttl=86400,
    )


def dispatch_task_event(task_id: str, actor_id: str, action: str) -> None:
    """Best-effort enqueue; the task is already committed so queue outages only get logged."""
    try:
        job = enqueue_task_event_job(task_id, actor_id, action)
    except Exception as exc:
        logger.warning("task_event_enqueue_failed task=%s action=%s error=%s", task_id, action, exc)
        return
    if job is not None:
        logger.info("task_event_enqueued task=%s action=%s job=%s", task_id, action, job.id)


async def process_task_event_job_async(task_id: str, actor_id: str, action: str) -> Optional[str]:
    """Notify the assignee of a task event. Returns the notified address, if any."""
    async with async_session_maker() as db:
        result = await db.execute(select(Task).where(Task.id == task_id, Task.deleted_at.is_(None)))
        task = result.scalar_one_or_none()
        if not task:
            logger.warning("Task event %s for task %s skipped: task not found", action, task_id)
            return None
        if not task.assigned_to or task.assigned_to == actor_id:
            return None

        assignee_result = await db.execute(select(User).where(User.id == task.assigned_to))
        assignee = assignee_result.scalar_one_or_none()
        actor_result = await db.execute(select(User).where(User.id == actor_id))
        actor = actor_result.scalar_one_or_none()

    if not assignee or not assignee.email:
        return None

    actor_name = (actor.name or actor.email) if actor else "A teammate"
    subject = EVENT_SUBJECTS.get(action, EVENT_SUBJECTS["updated"]).format(title=task.title)
    body = (
        f"{actor_name} {action} the task \"{task.title}\".\n\n"
        f"Status: {task.status}\nPriority: {task.priority}\n"
    )
    try:
        await deliver_email(
            OutboundEmail(to_address=assignee.email, to_name=assignee.name, subject=subject, body=body)
        )
    except MailTransportError as exc:
        logger.warning("Task event %s notification for task %s not delivered: %s", action, task_id, exc)
        return None

    logger.info("Task event %s for task %s delivered to %s", action, task_id, assignee.email)
    return assignee.email


def process_task_event_job(task_id: str, actor_id: str, action: str) -> Optional[str]:
    """RQ worker entrypoint for task events."""
    return asyncio.run(process_task_event_job_async(task_id, actor_id, action))
