"""Models package."""

from .user import User
from .user_credit import UserCredit
from .task import Task
from .task_comment import TaskComment
from .email_log import EmailLog
