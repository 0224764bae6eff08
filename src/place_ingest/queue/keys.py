"""Coordination store key schema shared by producers, workers and the monitor."""

from __future__ import annotations

PENDING_QUEUE = "update:pending"
PRIORITY_QUEUE = "update:priority"
PROCESSING_SET = "update:processing"
COMPLETED_SET = "update:completed"
FAILED_SET = "update:failed"
DELETED_SET = "update:deleted"
PROGRESS_KEY_PREFIX = "update:progress:"
STATS_HASH = "update:stats"
WORKERS_REGISTRY = "workers:registry"

STAT_TOTAL_PUSHED = "totalPushed"
STAT_TOTAL_COMPLETED = "totalCompleted"
STAT_TOTAL_FAILED = "totalFailed"
STAT_TOTAL_RETRIED = "totalRetried"
STAT_TOTAL_NOT_FOUND = "totalNotFound"

STAT_FIELDS: tuple[str, ...] = (
    STAT_TOTAL_PUSHED,
    STAT_TOTAL_COMPLETED,
    STAT_TOTAL_FAILED,
    STAT_TOTAL_RETRIED,
    STAT_TOTAL_NOT_FOUND,
)


def progress_key(task_id: str) -> str:
    return f"{PROGRESS_KEY_PREFIX}{task_id}"
