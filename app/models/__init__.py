# app/models/__init__.py

from .plan import Plan
from .user import User
from .subscription import Subscription
from .migration_job import MigrationJob
from .job_attempt import JobAttempt
from .notification import Notification
from .email_outbox import EmailOutbox

__all__ = [
    "Plan",
    "User",
    "Subscription",
    "MigrationJob",
    "JobAttempt",
    "Notification",
    "EmailOutbox",
]
