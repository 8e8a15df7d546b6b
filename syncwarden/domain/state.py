from __future__ import annotations


JOB_STATUS_PENDING = "pending"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"
JOB_STATUS_CANCELLED = "cancelled"

JOB_STATUSES = (
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_CANCELLED,
)

# Source states accepted by each job transition.
RETRYABLE_JOB_STATUSES = (JOB_STATUS_FAILED, JOB_STATUS_CANCELLED)
CANCELLABLE_JOB_STATUSES = (JOB_STATUS_PENDING, JOB_STATUS_PROCESSING)

HEALTH_UNKNOWN = "unknown"
HEALTH_HEALTHY = "healthy"
HEALTH_DEGRADED = "degraded"
HEALTH_DISABLED = "disabled"

HEALTH_STATES = (HEALTH_UNKNOWN, HEALTH_HEALTHY, HEALTH_DEGRADED, HEALTH_DISABLED)

# Python weekday() order.
WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def weekday_index(name: str) -> int:
    # Resolve configured weekday names to datetime.weekday() values.
    try:
        return WEEKDAYS.index(name.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown weekday: {name}") from exc
