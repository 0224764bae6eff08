"""Controllers for checkpoint inspection CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from place_ingest.checkpoint.manager import CheckpointManager
from place_ingest.checkpoint.models import BatchExecutionView
from place_ingest.checkpoint.repository import CheckpointRepository
from place_ingest.config import Settings


@dataclass(slots=True)
class CheckpointBatchCommand:
    """CLI input for batch-level checkpoint inspection."""

    db_path: Path | None
    batch_name: str | None = None


@dataclass(slots=True)
class CheckpointRegionsCommand:
    """CLI input for listing region checkpoints."""

    db_path: Path | None
    batch_name: str | None = None
    region_type: str | None = None


class CheckpointCliController:
    """Read-only views over region checkpoints and batch executions."""

    def progress(self, command: CheckpointBatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        batch_name = command.batch_name or settings.checkpoint.batch_name
        with _manager(settings) as manager:
            progress = manager.get_batch_progress(batch_name)
        return [
            f"Batch: {batch_name}",
            f"Regions: total={progress.total} completed={progress.completed} "
            f"failed={progress.failed} processing={progress.processing} "
            f"pending={progress.pending}",
            f"Completion: {progress.completion_percentage:.1f}%",
        ]

    def status(self, command: CheckpointBatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        batch_name = command.batch_name or settings.checkpoint.batch_name
        with _manager(settings) as manager:
            latest = manager.get_latest_execution(batch_name)
            running = manager.get_running_execution(batch_name)
            interrupted = manager.has_interrupted_batch(batch_name)
        lines = [
            f"Batch: {batch_name}",
            f"Running: {running.execution_id if running is not None else '-'}",
            f"Has interrupted runs: {'yes' if interrupted else 'no'}",
        ]
        if latest is None:
            lines.append("Latest execution: -")
            return lines
        lines.extend(_render_execution(latest))
        return lines

    def regions(self, command: CheckpointRegionsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        batch_name = command.batch_name or settings.checkpoint.batch_name
        with _manager(settings) as manager:
            regions = manager.list_region_checkpoints(batch_name, command.region_type)
        if not regions:
            return ["No region checkpoints."]
        return [
            f"{region.region_type}/{region.region_code} {region.region_name} "
            f"status={region.status.value} processed={region.processed_count}"
            + (f" error={region.error_message}" if region.error_message else "")
            for region in regions
        ]


def _render_execution(execution: BatchExecutionView) -> list[str]:
    end_time = execution.end_time.isoformat() if execution.end_time else "-"
    return [
        f"Latest execution: {execution.execution_id} status={execution.status.value}",
        f"Started: {execution.start_time.isoformat()} Ended: {end_time}",
        f"Regions: total={execution.total_regions} completed={execution.completed_regions} "
        f"failed={execution.failed_regions}",
        f"Error: {execution.error_summary or '-'}",
    ]


@contextmanager
def _manager(settings: Settings) -> Iterator[CheckpointManager]:
    repository = CheckpointRepository(settings.db_path)
    repository.init_schema()
    try:
        yield CheckpointManager(repository)
    finally:
        repository.close()
