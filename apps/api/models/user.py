"""User model."""

from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


SUPER_ADMIN_ROLE = "super_admin"
VISITOR_ROLE = "visitor"
PUBLIC_ROLE = "public"
USER_ROLES = (SUPER_ADMIN_ROLE, VISITOR_ROLE, PUBLIC_ROLE)


class User(Base):
    """Portal account. Sub-accounts point at their billing parent via parent_id."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, default=VISITOR_ROLE)
    parent_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credits = relationship("UserCredit", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    created_tasks = relationship(
        "Task",
        back_populates="creator",
        cascade="all, delete-orphan",
        passive_deletes=True,
        foreign_keys="Task.created_by",
    )
    email_logs = relationship(
        "EmailLog", back_populates="sender", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def is_super_admin(self) -> bool:
        return self.role == SUPER_ADMIN_ROLE
