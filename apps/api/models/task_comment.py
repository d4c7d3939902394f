"""TaskComment model, including system-generated audit comments."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


SYSTEM_COMMENT_MESSAGES = {
    "created": "Task created",
    "updated": "Task updated",
    "status_changed": "Status changed to {status}",
    "priority_changed": "Priority changed to {priority}",
    "assigned": "Task assigned to {assignee}",
    "due_date_changed": "Due date changed to {due_date}",
}


class TaskComment(Base):
    """Comment on a task."""

    __tablename__ = "task_comments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    is_system = Column(Boolean, nullable=False, default=False)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    task = relationship("Task", back_populates="comments")


def build_system_comment(task_id: str, user_id: str, action: str, **metadata) -> TaskComment:
    template = SYSTEM_COMMENT_MESSAGES.get(action, SYSTEM_COMMENT_MESSAGES["updated"])
    try:
        content = template.format(**metadata)
    except KeyError:
        content = SYSTEM_COMMENT_MESSAGES["updated"]
    return TaskComment(
        id=str(uuid.uuid4()),
        task_id=task_id,
        user_id=user_id,
        content=content,
        is_system=True,
        metadata_json={"action": action, **metadata},
    )
