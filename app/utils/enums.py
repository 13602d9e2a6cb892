import enum


class SubscriptionStatus(str, enum.Enum):
    active = "active"
    past_due = "past_due"
    suspended = "suspended"
    cancelled = "cancelled"
    inactive = "inactive"


class JobType(str, enum.Enum):
    notice = "notice"
    migration = "migration"


class JobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


ACTIVE_JOB_STATUSES = (JobStatus.pending, JobStatus.running)


class ErrorCategory(str, enum.Enum):
    network = "network"
    database = "database"
    payment = "payment"
    validation = "validation"
    permission = "permission"
    other = "other"


class NotificationType(str, enum.Enum):
    migration_job_failed = "migration_job_failed"
    migration_job_cancelled = "migration_job_cancelled"
    migration_success = "migration_success"
    notice_sending_failed = "notice_sending_failed"
    stripe_sync_failed = "stripe_sync_failed"
    cron_job_failed = "cron_job_failed"
    mass_suspensions = "mass_suspensions"
    revenue_drop = "revenue_drop"
    stuck_jobs = "stuck_jobs"
    high_failure_rate = "high_failure_rate"
    emergency_stop = "emergency_stop"
    migration_summary = "migration_summary"
    price_migrated = "price_migrated"


class OutboxStatus(str, enum.Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class RetryStrategy(str, enum.Enum):
    immediate = "immediate"
    delayed = "delayed"
    scheduled = "scheduled"


class AutoRetrySkipReason(str, enum.Enum):
    too_old = "too_old"
    too_many_failures = "too_many_failures"
    notice_job = "notice_job"
    too_recent = "too_recent"

    @property
    def message(self) -> str:
        return {
            AutoRetrySkipReason.too_old: "Job too old (more than 24 hours)",
            AutoRetrySkipReason.too_many_failures: "Too many failed attempts (3 or more)",
            AutoRetrySkipReason.notice_job: "Notice jobs cannot be auto-retried",
            AutoRetrySkipReason.too_recent: "Last attempt too recent (less than 30 minutes ago)",
        }[self]


class AlertSeverity(str, enum.Enum):
    info = "info"
    warning = "warning"
    error = "error"
    critical = "critical"


class HealthStatus(str, enum.Enum):
    healthy = "healthy"
    warning = "warning"
    critical = "critical"
