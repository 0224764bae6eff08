"""Checkpoint-driven region sweep with an explicit resume policy."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from place_ingest.checkpoint.manager import CheckpointManager
from place_ingest.checkpoint.models import (
    BatchProgress,
    RegionCheckpointView,
    RegionInfo,
    region_scope,
)
from place_ingest.config import CheckpointSettings

logger = logging.getLogger(__name__)

RegionSource = Callable[[], Sequence[RegionInfo]]
RegionProcessor = Callable[[RegionCheckpointView], int]


class ResumePolicy(str, Enum):
    """How a new run treats regions finished by earlier runs."""

    RESUME = "resume"
    FRESH = "fresh"


@dataclass(slots=True)
class RegionRunSummary:
    """Counters for one runner invocation."""

    batch_name: str
    scope: str
    execution_id: str | None = None
    resumed: bool = False
    recovered_regions: int = 0
    completed: int = 0
    failed: int = 0
    stopped: bool = False
    progress: BatchProgress = field(default_factory=BatchProgress)


class RegionBatchRunner:
    """Sweep all regions of a batch, one claimed region at a time.

    ``RESUME`` keeps region rows under the batch name, so completed regions are skipped
    and failed ones get one more attempt. ``FRESH`` scopes region rows to the new
    execution, so every run sweeps every region and older rows remain as history.
    """

    def __init__(  # noqa: PLR0913
        self,
        manager: CheckpointManager,
        *,
        batch_name: str,
        region_type: str,
        region_source: RegionSource,
        region_processor: RegionProcessor,
        policy: ResumePolicy = ResumePolicy.RESUME,
        stop_requested: Callable[[], bool] | None = None,
    ) -> None:
        self.manager = manager
        self.batch_name = batch_name
        self.region_type = region_type
        self.region_source = region_source
        self.region_processor = region_processor
        self.policy = policy
        self._stop_requested = stop_requested or (lambda: False)

    @classmethod
    def from_settings(
        cls,
        manager: CheckpointManager,
        settings: CheckpointSettings,
        *,
        region_source: RegionSource,
        region_processor: RegionProcessor,
        stop_requested: Callable[[], bool] | None = None,
    ) -> RegionBatchRunner:
        """Build a runner for the configured batch name, region type and resume policy."""

        return cls(
            manager,
            batch_name=settings.batch_name,
            region_type=settings.region_type,
            region_source=region_source,
            region_processor=region_processor,
            policy=ResumePolicy(settings.resume_policy),
            stop_requested=stop_requested,
        )

    def run(self) -> RegionRunSummary:
        execution = self.manager.start_batch_execution(self.batch_name)
        execution_id = execution.execution_id if execution is not None else None
        scope = self.batch_name
        if self.policy == ResumePolicy.FRESH and execution_id is not None:
            scope = region_scope(self.batch_name, execution_id)
        summary = RegionRunSummary(
            batch_name=self.batch_name,
            scope=scope,
            execution_id=execution_id,
        )

        try:
            if self.policy == ResumePolicy.RESUME and self.manager.has_interrupted_batch(
                self.batch_name,
            ):
                summary.resumed = True
                summary.recovered_regions = self.manager.fail_orphaned_regions(scope)
                logger.info(
                    "Resuming %s after an interrupted run (%s orphaned regions recovered)",
                    self.batch_name,
                    summary.recovered_regions,
                )

            self.manager.initialize_region_checkpoints(
                scope,
                self.region_type,
                list(self.region_source()),
            )
            self._sweep(summary)
        except Exception as error:
            self.manager.fail_batch_execution(self.batch_name, str(error) or type(error).__name__)
            raise

        summary.progress = self.manager.get_batch_progress(scope)
        if summary.stopped:
            logger.warning(
                "Batch %s stopped before completion: %s",
                self.batch_name,
                summary.progress,
            )
            return summary
        self.manager.complete_batch_execution(self.batch_name)
        logger.info("Batch %s finished: %s", self.batch_name, summary.progress)
        return summary

    def _sweep(self, summary: RegionRunSummary) -> None:
        while True:
            if self._stop_requested():
                summary.stopped = True
                return
            region = self.manager.claim_next_region(summary.scope, self.region_type)
            if region is None:
                return
            try:
                processed = self.region_processor(region)
            except Exception as error:  # noqa: BLE001
                self.manager.mark_region_as_failed(
                    region.checkpoint_id,
                    str(error) or type(error).__name__,
                )
                summary.failed += 1
                continue
            self.manager.mark_region_as_completed(region.checkpoint_id, processed)
            summary.completed += 1
