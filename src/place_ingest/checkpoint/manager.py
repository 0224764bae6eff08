"""Best-effort checkpoint API used by batch jobs.

Every public method logs and swallows persistence errors and returns a neutral value.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy.exc import SQLAlchemyError

from place_ingest.checkpoint.models import (
    BatchExecutionView,
    BatchProgress,
    ExecutionStatus,
    RegionCheckpointView,
    RegionInfo,
    execution_batch_name,
)
from place_ingest.checkpoint.repository import CheckpointRepository, SeedResult

logger = logging.getLogger(__name__)

_CHECKPOINT_ERRORS = (SQLAlchemyError, ValueError, RuntimeError)
ERROR_MESSAGE_MAX_CHARS = 2_000


class CheckpointManager:
    """Region claim-and-report protocol plus batch execution bookkeeping."""

    def __init__(self, repository: CheckpointRepository) -> None:
        self.repository = repository

    def start_batch_execution(self, batch_name: str) -> BatchExecutionView | None:
        try:
            execution = self.repository.start_execution(batch_name)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to start batch execution for %s", batch_name)
            return None
        logger.info("Batch execution started: %s (id=%s)", batch_name, execution.execution_id)
        return execution

    def initialize_region_checkpoints(
        self,
        batch_name: str,
        region_type: str,
        regions: Sequence[RegionInfo],
    ) -> SeedResult | None:
        """Seed region rows idempotently and record the region total on the running execution."""

        logger.info(
            "Initializing region checkpoints: %s - %s (%s regions)",
            batch_name,
            region_type,
            len(regions),
        )
        try:
            result = self.repository.seed_regions(batch_name, region_type, regions)
            self.repository.set_total_regions(execution_batch_name(batch_name), result.total)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to initialize region checkpoints for %s", batch_name)
            return None
        logger.info(
            "Region checkpoints ready: created=%s reset=%s kept=%s",
            result.created,
            result.reset,
            result.kept,
        )
        return result

    def get_next_pending_region(
        self,
        batch_name: str,
        region_type: str,
    ) -> RegionCheckpointView | None:
        try:
            region = self.repository.next_pending_region(batch_name, region_type)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to read next pending region for %s", batch_name)
            return None
        if region is None:
            logger.info("All %s regions of %s processed", region_type, batch_name)
        else:
            logger.debug("Next region: %s (%s)", region.region_name, region.region_code)
        return region

    def mark_region_as_processing(self, checkpoint_id: int) -> bool:
        try:
            region = self.repository.mark_processing(checkpoint_id)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to mark region %s as processing", checkpoint_id)
            return False
        if region is None:
            logger.warning("Region %s is not pending, claim skipped", checkpoint_id)
            return False
        logger.debug("Region processing: %s (%s)", region.region_name, region.region_code)
        return True

    def claim_next_region(
        self,
        batch_name: str,
        region_type: str,
    ) -> RegionCheckpointView | None:
        """Claim the next pending region in one conditional update."""

        try:
            region = self.repository.claim_next_region(batch_name, region_type)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to claim next region for %s", batch_name)
            return None
        if region is not None:
            logger.debug("Region claimed: %s (%s)", region.region_name, region.region_code)
        return region

    def mark_region_as_completed(self, checkpoint_id: int, processed_count: int) -> bool:
        try:
            region = self.repository.mark_completed(checkpoint_id, processed_count)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to mark region %s as completed", checkpoint_id)
            return False
        if region is None:
            return False
        logger.info(
            "Region completed: %s (%s) - %s places processed",
            region.region_name,
            region.region_code,
            processed_count,
        )
        return True

    def mark_region_as_failed(self, checkpoint_id: int, error_message: str) -> bool:
        message = error_message[:ERROR_MESSAGE_MAX_CHARS]
        try:
            region = self.repository.mark_failed(checkpoint_id, message)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to mark region %s as failed", checkpoint_id)
            return False
        if region is None:
            return False
        logger.error(
            "Region failed: %s (%s) - %s",
            region.region_name,
            region.region_code,
            message,
        )
        return True

    def complete_batch_execution(self, batch_name: str) -> bool:
        return self._finish_execution(batch_name, ExecutionStatus.COMPLETED, error_summary=None)

    def fail_batch_execution(self, batch_name: str, error_summary: str | None = None) -> bool:
        return self._finish_execution(batch_name, ExecutionStatus.FAILED, error_summary)

    def has_interrupted_batch(self, batch_name: str) -> bool:
        try:
            return self.repository.has_interrupted_execution(batch_name)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to check interrupted executions for %s", batch_name)
            return False

    def get_batch_progress(self, batch_name: str) -> BatchProgress:
        try:
            return self.repository.batch_progress(self.repository.resolve_scope(batch_name))
        except _CHECKPOINT_ERRORS:
            logger.warning("Failed to read batch progress for %s", batch_name, exc_info=True)
            return BatchProgress()

    def list_region_checkpoints(
        self,
        batch_name: str,
        region_type: str | None = None,
    ) -> list[RegionCheckpointView]:
        try:
            scope = self.repository.resolve_scope(batch_name)
            return self.repository.list_regions(scope, region_type)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to list region checkpoints for %s", batch_name)
            return []

    def get_running_execution(self, batch_name: str) -> BatchExecutionView | None:
        try:
            return self.repository.get_running_execution(batch_name)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to read running execution for %s", batch_name)
            return None

    def get_latest_execution(self, batch_name: str) -> BatchExecutionView | None:
        try:
            return self.repository.get_latest_execution(batch_name)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to read latest execution for %s", batch_name)
            return None

    def fail_orphaned_regions(self, batch_name: str) -> int:
        """Fail regions left PROCESSING by an interrupted run so the next seeding resets them."""

        try:
            count = self.repository.fail_orphaned_regions(batch_name)
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to recover orphaned regions for %s", batch_name)
            return 0
        if count:
            logger.warning("Recovered %s orphaned processing regions of %s", count, batch_name)
        return count

    def _finish_execution(
        self,
        batch_name: str,
        status: ExecutionStatus,
        error_summary: str | None,
    ) -> bool:
        try:
            execution = self.repository.finish_running_execution(
                batch_name,
                status=status,
                error_summary=error_summary,
            )
        except _CHECKPOINT_ERRORS:
            logger.exception("Failed to mark batch %s as %s", batch_name, status.value)
            return False
        if execution is None:
            logger.warning("Batch %s has no running execution to mark %s", batch_name, status.value)
            return False
        log = logger.info if status == ExecutionStatus.COMPLETED else logger.error
        log(
            "Batch execution %s: %s (id=%s)",
            status.value.lower(),
            batch_name,
            execution.execution_id,
        )
        return True
