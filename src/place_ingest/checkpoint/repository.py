"""SQLModel persistence for region checkpoints and batch execution metadata."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from place_ingest.checkpoint.models import (
    SCOPE_SEPARATOR,
    BatchExecutionView,
    BatchProgress,
    CheckpointStatus,
    ExecutionStatus,
    RegionCheckpointView,
    RegionInfo,
    execution_batch_name,
    region_scope,
)
from place_ingest.storage.alembic_runner import upgrade_head
from place_ingest.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from place_ingest.storage.sqlmodel_models import BatchCheckpoint, BatchExecutionMetadata

logger = logging.getLogger(__name__)

ORPHANED_REGION_MESSAGE = "Interrupted before completion."


@dataclass(slots=True)
class SeedResult:
    """Outcome of seeding region checkpoints."""

    created: int = 0
    reset: int = 0
    kept: int = 0

    @property
    def total(self) -> int:
        return self.created + self.reset + self.kept


class CheckpointRepository:
    """Checkpoint persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def start_execution(self, batch_name: str) -> BatchExecutionView:
        """Demote any RUNNING execution of ``batch_name`` to INTERRUPTED and start a new one."""

        while True:
            now = to_db_datetime(utc_now())
            execution_id = str(uuid4())
            with Session(self.engine) as session:
                running = session.exec(
                    select(BatchExecutionMetadata).where(
                        BatchExecutionMetadata.batch_name == batch_name,
                        BatchExecutionMetadata.status == ExecutionStatus.RUNNING.value,
                    ),
                ).one_or_none()
                if running is not None:
                    running.status = ExecutionStatus.INTERRUPTED.value
                    running.end_time = now
                    running.updated_at = now
                    session.add(running)
                    session.flush()
                    logger.warning(
                        "Batch %s: found running execution %s, marked as interrupted",
                        batch_name,
                        running.execution_id,
                    )
                row = BatchExecutionMetadata(
                    batch_name=batch_name,
                    execution_id=execution_id,
                    status=ExecutionStatus.RUNNING.value,
                    start_time=now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    # Another starter committed a RUNNING row first.
                    session.rollback()
                    continue
                session.refresh(row)
                return _to_execution_view(row)

    def get_running_execution(self, batch_name: str) -> BatchExecutionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BatchExecutionMetadata).where(
                    BatchExecutionMetadata.batch_name == batch_name,
                    BatchExecutionMetadata.status == ExecutionStatus.RUNNING.value,
                ),
            ).one_or_none()
            return _to_execution_view(row) if row is not None else None

    def get_latest_execution(self, batch_name: str) -> BatchExecutionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BatchExecutionMetadata)
                .where(BatchExecutionMetadata.batch_name == batch_name)
                .order_by(
                    col(BatchExecutionMetadata.start_time).desc(),
                    col(BatchExecutionMetadata.id).desc(),
                )
                .limit(1),
            ).one_or_none()
            return _to_execution_view(row) if row is not None else None

    def list_executions(self, batch_name: str, *, limit: int = 20) -> list[BatchExecutionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchExecutionMetadata)
                .where(BatchExecutionMetadata.batch_name == batch_name)
                .order_by(
                    col(BatchExecutionMetadata.start_time).desc(),
                    col(BatchExecutionMetadata.id).desc(),
                )
                .limit(limit),
            ).all()
            return [_to_execution_view(row) for row in rows]

    def has_interrupted_execution(self, batch_name: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(BatchExecutionMetadata.id)
                .where(
                    BatchExecutionMetadata.batch_name == batch_name,
                    BatchExecutionMetadata.status == ExecutionStatus.INTERRUPTED.value,
                )
                .limit(1),
            ).first()
            return row is not None

    def finish_running_execution(
        self,
        batch_name: str,
        *,
        status: ExecutionStatus,
        error_summary: str | None = None,
    ) -> BatchExecutionView | None:
        """Move the RUNNING execution of ``batch_name`` to a terminal status."""

        if status == ExecutionStatus.RUNNING:
            raise ValueError("Terminal execution status required.")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(BatchExecutionMetadata).where(
                    BatchExecutionMetadata.batch_name == batch_name,
                    BatchExecutionMetadata.status == ExecutionStatus.RUNNING.value,
                ),
            ).one_or_none()
            if row is None:
                return None
            row.status = status.value
            row.end_time = now
            row.updated_at = now
            if error_summary is not None:
                row.error_summary = error_summary
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_execution_view(row)

    def set_total_regions(self, batch_name: str, total_regions: int) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BatchExecutionMetadata)
                .where(
                    col(BatchExecutionMetadata.batch_name) == batch_name,
                    col(BatchExecutionMetadata.status) == ExecutionStatus.RUNNING.value,
                )
                .values(
                    total_regions=total_regions,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def seed_regions(
        self,
        batch_name: str,
        region_type: str,
        regions: Iterable[RegionInfo],
    ) -> SeedResult:
        """Insert missing regions as PENDING and reset FAILED ones; keep everything else."""

        unique: dict[str, RegionInfo] = {}
        for region in regions:
            unique.setdefault(region.code, region)

        while True:
            result = SeedResult()
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                existing = {
                    row.region_code: row
                    for row in session.exec(
                        select(BatchCheckpoint).where(
                            BatchCheckpoint.batch_name == batch_name,
                            BatchCheckpoint.region_type == region_type,
                        ),
                    ).all()
                }
                for code, region in unique.items():
                    row = existing.get(code)
                    if row is None:
                        session.add(
                            BatchCheckpoint(
                                batch_name=batch_name,
                                region_type=region_type,
                                region_code=code,
                                region_name=region.name,
                                parent_code=region.parent_code,
                                status=CheckpointStatus.PENDING.value,
                                created_at=now,
                                updated_at=now,
                            ),
                        )
                        result.created += 1
                    elif row.status == CheckpointStatus.FAILED.value:
                        row.status = CheckpointStatus.PENDING.value
                        row.error_message = None
                        row.start_time = None
                        row.end_time = None
                        row.updated_at = now
                        session.add(row)
                        result.reset += 1
                    else:
                        result.kept += 1
                try:
                    session.commit()
                except IntegrityError:
                    # A concurrent seeder inserted some of the same regions.
                    session.rollback()
                    continue
            return result

    def get_region(self, checkpoint_id: int) -> RegionCheckpointView | None:
        with Session(self.engine) as session:
            row = session.get(BatchCheckpoint, checkpoint_id)
            return _to_region_view(row) if row is not None else None

    def next_pending_region(
        self,
        batch_name: str,
        region_type: str,
    ) -> RegionCheckpointView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BatchCheckpoint)
                .where(
                    BatchCheckpoint.batch_name == batch_name,
                    BatchCheckpoint.region_type == region_type,
                    BatchCheckpoint.status == CheckpointStatus.PENDING.value,
                )
                .order_by(col(BatchCheckpoint.region_code).asc())
                .limit(1),
            ).one_or_none()
            return _to_region_view(row) if row is not None else None

    def mark_processing(self, checkpoint_id: int) -> RegionCheckpointView | None:
        """PENDING -> PROCESSING; ``None`` if the region is missing or not pending."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BatchCheckpoint)
                .where(
                    col(BatchCheckpoint.id) == checkpoint_id,
                    col(BatchCheckpoint.status) == CheckpointStatus.PENDING.value,
                )
                .values(
                    status=CheckpointStatus.PROCESSING.value,
                    start_time=now,
                    end_time=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(BatchCheckpoint, checkpoint_id)
            return _to_region_view(row) if row is not None else None

    def claim_next_region(
        self,
        batch_name: str,
        region_type: str,
    ) -> RegionCheckpointView | None:
        """Atomically pick the next PENDING region and move it to PROCESSING."""

        while True:
            candidate = self.next_pending_region(batch_name, region_type)
            if candidate is None:
                return None
            claimed = self.mark_processing(candidate.checkpoint_id)
            if claimed is not None:
                return claimed

    def mark_completed(
        self,
        checkpoint_id: int,
        processed_count: int,
    ) -> RegionCheckpointView | None:
        return self._finish_region(
            checkpoint_id,
            status=CheckpointStatus.COMPLETED,
            processed_count=processed_count,
            error_message=None,
        )

    def mark_failed(self, checkpoint_id: int, error_message: str) -> RegionCheckpointView | None:
        return self._finish_region(
            checkpoint_id,
            status=CheckpointStatus.FAILED,
            processed_count=None,
            error_message=error_message,
        )

    def fail_orphaned_regions(self, batch_name: str) -> int:
        """Move PROCESSING regions of ``batch_name`` to FAILED; return how many moved."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BatchCheckpoint)
                .where(
                    col(BatchCheckpoint.batch_name) == batch_name,
                    col(BatchCheckpoint.status) == CheckpointStatus.PROCESSING.value,
                )
                .values(
                    status=CheckpointStatus.FAILED.value,
                    error_message=ORPHANED_REGION_MESSAGE,
                    end_time=now,
                    updated_at=now,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def list_regions(
        self,
        batch_name: str,
        region_type: str | None = None,
    ) -> list[RegionCheckpointView]:
        with Session(self.engine) as session:
            statement = select(BatchCheckpoint).where(BatchCheckpoint.batch_name == batch_name)
            if region_type is not None:
                statement = statement.where(BatchCheckpoint.region_type == region_type)
            rows = session.exec(
                statement.order_by(
                    col(BatchCheckpoint.region_type).asc(),
                    col(BatchCheckpoint.region_code).asc(),
                ),
            ).all()
            return [_to_region_view(row) for row in rows]

    def resolve_scope(self, batch_name: str) -> str:
        """Checkpoint scope a plain batch name reports on.

        FRESH runs keep their regions under ``region_scope(batch, execution_id)``. A plain
        name resolves to the RUNNING execution's scope, then to itself, then to the latest
        execution's scope, whichever holds region rows first.
        """

        if SCOPE_SEPARATOR in batch_name:
            return batch_name
        candidates: list[str] = []
        running = self.get_running_execution(batch_name)
        if running is not None:
            candidates.append(region_scope(batch_name, running.execution_id))
        candidates.append(batch_name)
        latest = self.get_latest_execution(batch_name)
        if latest is not None:
            candidates.append(region_scope(batch_name, latest.execution_id))
        with Session(self.engine) as session:
            for scope in candidates:
                row = session.exec(
                    select(BatchCheckpoint.id)
                    .where(BatchCheckpoint.batch_name == scope)
                    .limit(1),
                ).first()
                if row is not None:
                    return scope
        return batch_name

    def batch_progress(self, batch_name: str) -> BatchProgress:
        with Session(self.engine) as session:
            total, completed, failed, processing = session.exec(
                select(
                    func.count(),
                    func.sum(_status_case(CheckpointStatus.COMPLETED)),
                    func.sum(_status_case(CheckpointStatus.FAILED)),
                    func.sum(_status_case(CheckpointStatus.PROCESSING)),
                )
                .select_from(BatchCheckpoint)
                .where(BatchCheckpoint.batch_name == batch_name),
            ).one()
            return BatchProgress(
                total=int(total or 0),
                completed=int(completed or 0),
                failed=int(failed or 0),
                processing=int(processing or 0),
            )

    def _finish_region(
        self,
        checkpoint_id: int,
        *,
        status: CheckpointStatus,
        processed_count: int | None,
        error_message: str | None,
    ) -> RegionCheckpointView | None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(BatchCheckpoint, checkpoint_id)
            if row is None:
                return None
            if row.status != CheckpointStatus.PROCESSING.value:
                logger.warning(
                    "Region %s (%s) is %s, expected %s; %s ignored",
                    row.region_name,
                    row.region_code,
                    row.status,
                    CheckpointStatus.PROCESSING.value,
                    status.value,
                )
                return None
            row.status = status.value
            row.end_time = now
            row.updated_at = now
            row.error_message = error_message
            if processed_count is not None:
                row.processed_count = processed_count
            session.add(row)

            execution = session.exec(
                select(BatchExecutionMetadata).where(
                    BatchExecutionMetadata.batch_name == execution_batch_name(row.batch_name),
                    BatchExecutionMetadata.status == ExecutionStatus.RUNNING.value,
                ),
            ).one_or_none()
            if execution is not None:
                if status == CheckpointStatus.COMPLETED:
                    execution.completed_regions += 1
                else:
                    execution.failed_regions += 1
                execution.last_checkpoint_id = row.id
                execution.updated_at = now
                session.add(execution)
            session.commit()
            session.refresh(row)
            return _to_region_view(row)


def _status_case(status: CheckpointStatus):
    return case((col(BatchCheckpoint.status) == status.value, 1), else_=0)


def _to_region_view(row: BatchCheckpoint) -> RegionCheckpointView:
    if row.id is None:
        raise RuntimeError("Checkpoint row has no id.")
    return RegionCheckpointView(
        checkpoint_id=row.id,
        batch_name=row.batch_name,
        region_type=row.region_type,
        region_code=row.region_code,
        region_name=row.region_name,
        parent_code=row.parent_code,
        status=CheckpointStatus(row.status),
        start_time=_optional_aware(row.start_time),
        end_time=_optional_aware(row.end_time),
        processed_count=row.processed_count,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_execution_view(row: BatchExecutionMetadata) -> BatchExecutionView:
    return BatchExecutionView(
        batch_name=row.batch_name,
        execution_id=row.execution_id,
        status=ExecutionStatus(row.status),
        start_time=to_utc_aware_datetime(row.start_time),
        end_time=_optional_aware(row.end_time),
        total_regions=row.total_regions,
        completed_regions=row.completed_regions,
        failed_regions=row.failed_regions,
        last_checkpoint_id=row.last_checkpoint_id,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _optional_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return to_utc_aware_datetime(value)
