"""Routers package."""

from . import (
    health,
    auth,
    credits,
    tasks,
    emails,
    users,
)
