"""Domain models for the update queue and its JSON wire format."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from place_ingest.storage.common import from_iso, utc_now

NORMAL_PRIORITY = 0
HIGH_PRIORITY = 1


class TaskStatus(str, Enum):
    """Per-task progress states recorded in the progress hash."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    NOT_FOUND = "not_found"


class WorkerStatus(str, Enum):
    """Worker process lifecycle states."""

    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    STOPPED = "stopped"


class TaskOutcome(str, Enum):
    """Result of one worker loop iteration."""

    IDLE = "idle"
    DEFERRED = "deferred"
    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass(slots=True, frozen=True)
class TaskFlags:
    """Which place sub-resources a task should refresh."""

    update_menus: bool = True
    update_images: bool = True
    update_reviews: bool = True


@dataclass(slots=True)
class UpdateTask:
    """One unit of retryable place update work."""

    task_id: str
    place_id: int
    update_menus: bool
    update_images: bool
    update_reviews: bool
    priority: int = NORMAL_PRIORITY
    attempts: int = 0
    created_at: datetime = field(default_factory=utc_now)
    scheduled_at: datetime | None = None

    @classmethod
    def create(
        cls,
        place_id: int,
        flags: TaskFlags | None = None,
        *,
        priority: int = NORMAL_PRIORITY,
        task_id: str | None = None,
    ) -> UpdateTask:
        """Build a fresh task with zero attempts."""

        flags = flags or TaskFlags()
        return cls(
            task_id=task_id or str(uuid4()),
            place_id=place_id,
            update_menus=flags.update_menus,
            update_images=flags.update_images,
            update_reviews=flags.update_reviews,
            priority=priority,
        )

    @property
    def flags(self) -> TaskFlags:
        return TaskFlags(
            update_menus=self.update_menus,
            update_images=self.update_images,
            update_reviews=self.update_reviews,
        )

    def is_due(self, now: datetime) -> bool:
        return self.scheduled_at is None or self.scheduled_at <= now

    def to_json(self) -> str:
        return json.dumps(
            {
                "taskId": self.task_id,
                "placeId": self.place_id,
                "updateMenus": self.update_menus,
                "updateImages": self.update_images,
                "updateReviews": self.update_reviews,
                "priority": self.priority,
                "attempts": self.attempts,
                "createdAt": _to_iso(self.created_at),
                "scheduledAt": _to_iso(self.scheduled_at),
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, payload: str) -> UpdateTask:
        """Parse a queued task; raise ``ValueError`` on malformed payloads."""

        data = _load_object(payload, kind="task")
        try:
            created_at = _parse_optional_datetime(data.get("createdAt"))
            return cls(
                task_id=str(data["taskId"]),
                place_id=int(data["placeId"]),
                update_menus=bool(data.get("updateMenus", False)),
                update_images=bool(data.get("updateImages", False)),
                update_reviews=bool(data.get("updateReviews", False)),
                priority=int(data.get("priority") or NORMAL_PRIORITY),
                attempts=int(data.get("attempts") or 0),
                created_at=created_at or utc_now(),
                scheduled_at=_parse_optional_datetime(data.get("scheduledAt")),
            )
        except (KeyError, TypeError) as error:
            raise ValueError(f"Malformed task payload: {error}") from error


@dataclass(slots=True)
class WorkerInfo:
    """Registry entry describing one worker process."""

    worker_id: str
    hostname: str
    threads: int
    status: WorkerStatus
    started_at: datetime
    last_heartbeat: datetime
    current_task_id: str | None = None
    tasks_processed: int = 0
    tasks_failed: int = 0

    def is_stale(self, *, now: datetime, threshold: timedelta) -> bool:
        return now - self.last_heartbeat > threshold

    def to_json(self) -> str:
        return json.dumps(
            {
                "workerId": self.worker_id,
                "hostname": self.hostname,
                "threads": self.threads,
                "status": self.status.value,
                "startedAt": _to_iso(self.started_at),
                "lastHeartbeat": _to_iso(self.last_heartbeat),
                "currentTaskId": self.current_task_id,
                "tasksProcessed": self.tasks_processed,
                "tasksFailed": self.tasks_failed,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, payload: str) -> WorkerInfo:
        data = _load_object(payload, kind="worker")
        try:
            started_at = from_iso(str(data["startedAt"]))
            return cls(
                worker_id=str(data["workerId"]),
                hostname=str(data.get("hostname") or ""),
                threads=int(data.get("threads") or 0),
                status=WorkerStatus(str(data["status"])),
                started_at=started_at,
                last_heartbeat=_parse_optional_datetime(data.get("lastHeartbeat")) or started_at,
                current_task_id=data.get("currentTaskId"),
                tasks_processed=int(data.get("tasksProcessed") or 0),
                tasks_failed=int(data.get("tasksFailed") or 0),
            )
        except (KeyError, TypeError) as error:
            raise ValueError(f"Malformed worker payload: {error}") from error


@dataclass(slots=True)
class TaskProgress:
    """Read view over the per-task progress hash."""

    task_id: str
    place_id: int | None
    status: str
    worker_id: str | None
    attempts: int
    update_menus: bool
    update_images: bool
    update_reviews: bool
    start_time: datetime | None
    end_time: datetime | None
    last_error: str | None

    @classmethod
    def from_hash(cls, task_id: str, values: Mapping[str, str]) -> TaskProgress:
        place_id = values.get("placeId")
        return cls(
            task_id=task_id,
            place_id=int(place_id) if place_id else None,
            status=values.get("status", TaskStatus.PENDING.value),
            worker_id=values.get("workerId") or None,
            attempts=int(values.get("attempts") or 0),
            update_menus=_parse_bool(values.get("updateMenus")),
            update_images=_parse_bool(values.get("updateImages")),
            update_reviews=_parse_bool(values.get("updateReviews")),
            start_time=_parse_optional_datetime(values.get("startTime")),
            end_time=_parse_optional_datetime(values.get("endTime")),
            last_error=values.get("lastError") or None,
        )


@dataclass(slots=True)
class QueueStats:
    """Point-in-time snapshot of queue depths and worker fleet."""

    pending_count: int
    priority_count: int
    processing_count: int
    completed_count: int
    failed_count: int
    deleted_count: int
    active_workers: int
    total_workers: int
    last_updated: datetime
    workers: dict[str, WorkerInfo] = field(default_factory=dict)


def encode_bool(value: bool) -> str:
    return "true" if value else "false"


def encode_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _parse_optional_datetime(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    return from_iso(str(value))


def _load_object(payload: str, *, kind: str) -> dict[str, Any]:
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError(f"Malformed {kind} payload: expected JSON object.")
    return data
