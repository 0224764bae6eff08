"""Domain models for region checkpoints and batch executions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class CheckpointStatus(str, Enum):
    """Per-region lifecycle within a batch."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ExecutionStatus(str, Enum):
    """Batch execution lifecycle."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    INTERRUPTED = "INTERRUPTED"


@dataclass(slots=True, frozen=True)
class RegionInfo:
    """Region to seed as a checkpoint."""

    code: str
    name: str
    parent_code: str | None = None


@dataclass(slots=True)
class RegionCheckpointView:
    """Readable region checkpoint row."""

    checkpoint_id: int
    batch_name: str
    region_type: str
    region_code: str
    region_name: str
    parent_code: str | None
    status: CheckpointStatus
    start_time: datetime | None
    end_time: datetime | None
    processed_count: int
    error_message: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class BatchExecutionView:
    """Readable batch execution metadata row."""

    batch_name: str
    execution_id: str
    status: ExecutionStatus
    start_time: datetime
    end_time: datetime | None
    total_regions: int
    completed_regions: int
    failed_regions: int
    last_checkpoint_id: int | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True, frozen=True)
class BatchProgress:
    """Region counts of one batch across all region types."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    processing: int = 0

    @property
    def pending(self) -> int:
        return self.total - self.completed - self.failed - self.processing

    @property
    def completion_percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.completed / self.total * 100.0

    def __str__(self) -> str:
        return (
            f"Progress(total={self.total}, completed={self.completed}, failed={self.failed}, "
            f"processing={self.processing}, pending={self.pending}, "
            f"{self.completion_percentage:.1f}%)"
        )


SCOPE_SEPARATOR = "#"


def region_scope(batch_name: str, execution_id: str) -> str:
    """Checkpoint scope that isolates one execution's region rows."""

    return f"{batch_name}{SCOPE_SEPARATOR}{execution_id}"


def execution_batch_name(scope: str) -> str:
    """Batch name owning a checkpoint scope built by ``region_scope``."""

    return scope.split(SCOPE_SEPARATOR, 1)[0]
