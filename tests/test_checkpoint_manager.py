from __future__ import annotations

import allure
from sqlalchemy.exc import OperationalError

from place_ingest.checkpoint.manager import CheckpointManager
from place_ingest.checkpoint.models import (
    BatchProgress,
    CheckpointStatus,
    ExecutionStatus,
    RegionInfo,
    execution_batch_name,
    region_scope,
)
from place_ingest.checkpoint.repository import CheckpointRepository

pytestmark = [
    allure.epic("Batch Checkpoints"),
    allure.feature("Checkpoint Manager"),
]

BATCH = "place-ingestion-batch"
REGION_TYPE = "sigungu"
REGIONS = [
    RegionInfo("11110", "Jongno-gu", "11"),
    RegionInfo("11140", "Jung-gu", "11"),
    RegionInfo("11170", "Yongsan-gu", "11"),
]


def _status_by_code(manager: CheckpointManager, batch: str = BATCH) -> dict[str, CheckpointStatus]:
    return {
        region.region_code: region.status for region in manager.list_region_checkpoints(batch)
    }


def test_start_interrupts_previous_running_execution(
    checkpoint_manager: CheckpointManager,
    checkpoint_repository: CheckpointRepository,
) -> None:
    first = checkpoint_manager.start_batch_execution(BATCH)
    second = checkpoint_manager.start_batch_execution(BATCH)

    assert first is not None
    assert second is not None
    assert first.execution_id != second.execution_id
    executions = checkpoint_repository.list_executions(BATCH)
    statuses = {execution.execution_id: execution.status for execution in executions}
    assert statuses == {
        first.execution_id: ExecutionStatus.INTERRUPTED,
        second.execution_id: ExecutionStatus.RUNNING,
    }
    running = checkpoint_manager.get_running_execution(BATCH)
    assert running is not None
    assert running.execution_id == second.execution_id
    assert checkpoint_manager.has_interrupted_batch(BATCH)
    assert not checkpoint_manager.has_interrupted_batch("other-batch")


def test_initialize_is_idempotent_and_keeps_completed_regions(
    checkpoint_manager: CheckpointManager,
) -> None:
    checkpoint_manager.start_batch_execution(BATCH)
    first = checkpoint_manager.initialize_region_checkpoints(BATCH, REGION_TYPE, REGIONS)
    region = checkpoint_manager.claim_next_region(BATCH, REGION_TYPE)
    assert region is not None
    assert checkpoint_manager.mark_region_as_completed(region.checkpoint_id, 12)

    second = checkpoint_manager.initialize_region_checkpoints(BATCH, REGION_TYPE, REGIONS)

    assert first is not None
    assert (first.created, first.reset, first.kept) == (3, 0, 0)
    assert second is not None
    assert (second.created, second.reset, second.kept) == (0, 0, 3)
    assert len(checkpoint_manager.list_region_checkpoints(BATCH)) == 3
    assert _status_by_code(checkpoint_manager)["11110"] == CheckpointStatus.COMPLETED
    running = checkpoint_manager.get_running_execution(BATCH)
    assert running is not None
    assert running.total_regions == 3


def test_initialize_resets_failed_regions_to_pending(
    checkpoint_manager: CheckpointManager,
) -> None:
    checkpoint_manager.initialize_region_checkpoints(BATCH, REGION_TYPE, REGIONS)
    region = checkpoint_manager.claim_next_region(BATCH, REGION_TYPE)
    assert region is not None
    assert checkpoint_manager.mark_region_as_failed(region.checkpoint_id, "HTTP 503")

    result = checkpoint_manager.initialize_region_checkpoints(BATCH, REGION_TYPE, REGIONS)

    assert result is not None
    assert result.reset == 1
    reset = checkpoint_manager.repository.get_region(region.checkpoint_id)
    assert reset is not None
    assert reset.status == CheckpointStatus.PENDING
    assert reset.error_message is None
    assert reset.start_time is None
    assert reset.end_time is None


def test_regions_are_claimed_in_code_order_until_exhausted(
    checkpoint_manager: CheckpointManager,
) -> None:
    checkpoint_manager.initialize_region_checkpoints(
        BATCH,
        REGION_TYPE,
        list(reversed(REGIONS)),
    )

    claimed = []
    while (region := checkpoint_manager.claim_next_region(BATCH, REGION_TYPE)) is not None:
        assert region.status == CheckpointStatus.PROCESSING
        assert region.start_time is not None
        claimed.append(region.region_code)

    assert claimed == ["11110", "11140", "11170"]
    assert checkpoint_manager.get_next_pending_region(BATCH, REGION_TYPE) is None


def test_mark_processing_only_claims_pending_regions(
    checkpoint_manager: CheckpointManager,
) -> None:
    checkpoint_manager.initialize_region_checkpoints(BATCH, REGION_TYPE, REGIONS)
    region = checkpoint_manager.get_next_pending_region(BATCH, REGION_TYPE)
    assert region is not None

    assert checkpoint_manager.mark_region_as_processing(region.checkpoint_id) is True
    assert checkpoint_manager.mark_region_as_processing(region.checkpoint_id) is False
    assert checkpoint_manager.mark_region_as_processing(999_999) is False


def test_terminal_transitions_require_processing(checkpoint_manager: CheckpointManager) -> None:
    checkpoint_manager.initialize_region_checkpoints(BATCH, REGION_TYPE, REGIONS)
    region = checkpoint_manager.get_next_pending_region(BATCH, REGION_TYPE)
    assert region is not None

    assert checkpoint_manager.mark_region_as_completed(region.checkpoint_id, 5) is False
    assert checkpoint_manager.mark_region_as_failed(region.checkpoint_id, "boom") is False
    assert _status_by_code(checkpoint_manager)[region.region_code] == CheckpointStatus.PENDING


def test_progress_counts_and_execution_counters(checkpoint_manager: CheckpointManager) -> None:
    checkpoint_manager.start_batch_execution(BATCH)
    checkpoint_manager.initialize_region_checkpoints(BATCH, REGION_TYPE, REGIONS)
    checkpoint_manager.initialize_region_checkpoints(
        BATCH,
        "dong",
        [RegionInfo("1111051500", "Cheongunhyoja-dong", "11110")],
    )

    first = checkpoint_manager.claim_next_region(BATCH, REGION_TYPE)
    second = checkpoint_manager.claim_next_region(BATCH, REGION_TYPE)
    third = checkpoint_manager.claim_next_region(BATCH, REGION_TYPE)
    assert first is not None and second is not None and third is not None
    checkpoint_manager.mark_region_as_completed(first.checkpoint_id, 40)
    checkpoint_manager.mark_region_as_failed(second.checkpoint_id, "x" * 5_000)

    progress = checkpoint_manager.get_batch_progress(BATCH)

    assert progress == BatchProgress(total=4, completed=1, failed=1, processing=1)
    assert progress.pending == 1
    assert progress.completion_percentage == 25.0
    assert "25.0%" in str(progress)

    failed = checkpoint_manager.repository.get_region(second.checkpoint_id)
    assert failed is not None
    assert len(failed.error_message or "") == 2_000
    done = checkpoint_manager.repository.get_region(first.checkpoint_id)
    assert done is not None
    assert done.processed_count == 40
    assert done.end_time is not None

    running = checkpoint_manager.get_running_execution(BATCH)
    assert running is not None
    assert running.completed_regions == 1
    assert running.failed_regions == 1
    assert running.last_checkpoint_id == second.checkpoint_id


def test_empty_batch_progress(checkpoint_manager: CheckpointManager) -> None:
    progress = checkpoint_manager.get_batch_progress("nothing-here")

    assert progress == BatchProgress()
    assert progress.completion_percentage == 0.0


def test_complete_and_fail_need_a_running_execution(
    checkpoint_manager: CheckpointManager,
) -> None:
    assert checkpoint_manager.complete_batch_execution(BATCH) is False

    checkpoint_manager.start_batch_execution(BATCH)
    assert checkpoint_manager.complete_batch_execution(BATCH) is True
    latest = checkpoint_manager.get_latest_execution(BATCH)
    assert latest is not None
    assert latest.status == ExecutionStatus.COMPLETED
    assert latest.end_time is not None

    checkpoint_manager.start_batch_execution(BATCH)
    assert checkpoint_manager.fail_batch_execution(BATCH, "source offline") is True
    latest = checkpoint_manager.get_latest_execution(BATCH)
    assert latest is not None
    assert latest.status == ExecutionStatus.FAILED
    assert latest.error_summary == "source offline"
    assert checkpoint_manager.get_running_execution(BATCH) is None


def test_fail_orphaned_regions_only_touches_processing(
    checkpoint_manager: CheckpointManager,
) -> None:
    checkpoint_manager.initialize_region_checkpoints(BATCH, REGION_TYPE, REGIONS)
    checkpoint_manager.claim_next_region(BATCH, REGION_TYPE)
    checkpoint_manager.claim_next_region(BATCH, REGION_TYPE)

    assert checkpoint_manager.fail_orphaned_regions(BATCH) == 2
    assert checkpoint_manager.fail_orphaned_regions(BATCH) == 0

    statuses = _status_by_code(checkpoint_manager)
    assert statuses == {
        "11110": CheckpointStatus.FAILED,
        "11140": CheckpointStatus.FAILED,
        "11170": CheckpointStatus.PENDING,
    }


def test_scoped_regions_report_to_owning_batch(checkpoint_manager: CheckpointManager) -> None:
    execution = checkpoint_manager.start_batch_execution(BATCH)
    assert execution is not None
    scope = region_scope(BATCH, execution.execution_id)
    assert execution_batch_name(scope) == BATCH

    checkpoint_manager.initialize_region_checkpoints(scope, REGION_TYPE, REGIONS[:1])
    region = checkpoint_manager.claim_next_region(scope, REGION_TYPE)
    assert region is not None
    checkpoint_manager.mark_region_as_completed(region.checkpoint_id, 3)

    running = checkpoint_manager.get_running_execution(BATCH)
    assert running is not None
    assert running.total_regions == 1
    assert running.completed_regions == 1
    assert checkpoint_manager.get_batch_progress(BATCH) == BatchProgress(total=1, completed=1)
    assert checkpoint_manager.get_batch_progress(scope).completed == 1
    assert [view.batch_name for view in checkpoint_manager.list_region_checkpoints(BATCH)] == [
        scope,
    ]

    assert checkpoint_manager.complete_batch_execution(BATCH) is True
    assert checkpoint_manager.get_batch_progress(BATCH) == BatchProgress(total=1, completed=1)


def test_plain_batch_regions_win_over_finished_scopes(
    checkpoint_manager: CheckpointManager,
) -> None:
    fresh = checkpoint_manager.start_batch_execution(BATCH)
    assert fresh is not None
    checkpoint_manager.initialize_region_checkpoints(
        region_scope(BATCH, fresh.execution_id),
        REGION_TYPE,
        REGIONS,
    )
    checkpoint_manager.complete_batch_execution(BATCH)

    checkpoint_manager.start_batch_execution(BATCH)
    checkpoint_manager.initialize_region_checkpoints(BATCH, REGION_TYPE, REGIONS[:1])

    assert checkpoint_manager.get_batch_progress(BATCH).total == 1


class _BrokenRepository:
    def __getattr__(self, name: str):
        def _fail(*args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        return _fail


def test_persistence_errors_are_swallowed() -> None:
    manager = CheckpointManager(_BrokenRepository())  # type: ignore[arg-type]

    assert manager.start_batch_execution(BATCH) is None
    assert manager.initialize_region_checkpoints(BATCH, REGION_TYPE, REGIONS) is None
    assert manager.get_next_pending_region(BATCH, REGION_TYPE) is None
    assert manager.claim_next_region(BATCH, REGION_TYPE) is None
    assert manager.mark_region_as_processing(1) is False
    assert manager.mark_region_as_completed(1, 10) is False
    assert manager.mark_region_as_failed(1, "boom") is False
    assert manager.complete_batch_execution(BATCH) is False
    assert manager.fail_batch_execution(BATCH, "boom") is False
    assert manager.has_interrupted_batch(BATCH) is False
    assert manager.get_batch_progress(BATCH) == BatchProgress()
    assert manager.list_region_checkpoints(BATCH) == []
    assert manager.get_running_execution(BATCH) is None
    assert manager.get_latest_execution(BATCH) is None
    assert manager.fail_orphaned_regions(BATCH) == 0
