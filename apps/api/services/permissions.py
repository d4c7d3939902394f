"""Role to permission mapping for portal accounts."""

from __future__ import annotations

from typing import Dict, FrozenSet

from models.user import PUBLIC_ROLE, SUPER_ADMIN_ROLE, VISITOR_ROLE, User


PERMISSION_GROUPS: Dict[str, tuple] = {
    "send_emails": (
        "send emails",
        "view email logs",
        "view all email logs",
        "manage email logs",
    ),
    "task_management": (
        "view all tasks",
        "view assigned tasks",
        "create tasks",
        "edit tasks",
        "delete tasks",
        "assign tasks",
        "change task status",
        "change task priority",
        "view comments",
        "manage comments",
    ),
    "users": (
        "view all users",
        "view users",
        "create users",
        "edit users",
        "delete users",
    ),
}

ALL_PERMISSIONS: FrozenSet[str] = frozenset(
    permission for group in PERMISSION_GROUPS.values() for permission in group
)

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    SUPER_ADMIN_ROLE: ALL_PERMISSIONS,
    VISITOR_ROLE: frozenset(
        [p for p in PERMISSION_GROUPS["send_emails"] if p != "view all email logs"]
        + [p for p in PERMISSION_GROUPS["task_management"] if p != "view all tasks"]
        + list(PERMISSION_GROUPS["users"])
    ),
    PUBLIC_ROLE: frozenset({"view all email logs", "view all tasks", "view all users"}),
}


def has_permission(user: User, permission: str) -> bool:
    if user.is_super_admin:
        return True
    return permission in ROLE_PERMISSIONS.get(user.role or "", frozenset())
