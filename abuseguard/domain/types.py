from __future__ import annotations

from enum import Enum


class CapType(str, Enum):
    DB_QUERIES_PER_DAY = "db_queries_per_day"
    REALTIME_CONNECTIONS = "realtime_connections"
    STORAGE_UPLOADS_PER_DAY = "storage_uploads_per_day"
    FUNCTION_INVOCATIONS_PER_DAY = "function_invocations_per_day"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class Environment(str, Enum):
    PROD = "prod"
    STAGING = "staging"
    DEV = "dev"


class DetectionType(str, Enum):
    SPIKE = "spike"
    ERROR_RATE = "error_rate"


class Severity(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    SEVERE = "severe"


class DetectionAction(str, Enum):
    NONE = "none"
    WARNING = "warning"
    SUSPENSION = "suspension"


class OverrideAction(str, Enum):
    UNSUSPEND = "unsuspend"
    INCREASE_CAPS = "increase_caps"
    BOTH = "both"


class NotificationType(str, Enum):
    PROJECT_SUSPENDED = "project_suspended"
    PROJECT_UNSUSPENDED = "project_unsuspended"
    QUOTA_WARNING = "quota_warning"
    USAGE_SPIKE_DETECTED = "usage_spike_detected"
    ERROR_RATE_DETECTED = "error_rate_detected"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    IN_APP = "in_app"
    SMS = "sms"
    WEBHOOK = "webhook"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    # Internal claim marker held while a worker dispatches the notification.
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"


# Queue ordering weight; higher drains first.
PRIORITY_RANK: dict[str, int] = {
    NotificationPriority.CRITICAL.value: 4,
    NotificationPriority.HIGH.value: 3,
    NotificationPriority.MEDIUM.value: 2,
    NotificationPriority.LOW.value: 1,
}
