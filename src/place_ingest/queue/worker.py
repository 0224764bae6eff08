"""Multi-threaded queue worker that executes place update tasks."""

from __future__ import annotations

import logging
import socket
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

import redis

from place_ingest.config import QueueSettings
from place_ingest.queue.failures import (
    FailureClass,
    TaskFailureClassification,
    classify_task_failure,
    summarize_error,
)
from place_ingest.queue.handlers import NotFoundSink, TaskHandler
from place_ingest.queue.keys import (
    COMPLETED_SET,
    DELETED_SET,
    FAILED_SET,
    PENDING_QUEUE,
    PRIORITY_QUEUE,
    PROCESSING_SET,
    STAT_TOTAL_COMPLETED,
    STAT_TOTAL_FAILED,
    STAT_TOTAL_NOT_FOUND,
    STAT_TOTAL_RETRIED,
    STATS_HASH,
    progress_key,
)
from place_ingest.queue.models import (
    TaskOutcome,
    TaskStatus,
    UpdateTask,
    WorkerInfo,
    WorkerStatus,
    encode_bool,
    encode_datetime,
)
from place_ingest.queue.registry import WorkerRegistry
from place_ingest.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    not_found: int = 0
    deferred: int = 0
    idle_polls: int = 0

    def record(self, outcome: TaskOutcome) -> None:
        if outcome == TaskOutcome.IDLE:
            self.idle_polls += 1
            return
        if outcome == TaskOutcome.DEFERRED:
            self.deferred += 1
            return
        self.processed += 1
        if outcome == TaskOutcome.COMPLETED:
            self.completed += 1
        elif outcome == TaskOutcome.RETRIED:
            self.retried += 1
        elif outcome == TaskOutcome.FAILED:
            self.failed += 1
        elif outcome == TaskOutcome.NOT_FOUND:
            self.not_found += 1


class QueueWorker:
    """Pops tasks from the coordination store and runs them on a fixed thread pool."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: redis.Redis,
        handler: TaskHandler,
        not_found_sink: NotFoundSink,
        worker_id: str,
        threads: int = 2,
        queue_settings: QueueSettings | None = None,
        heartbeat_interval_seconds: float = 10.0,
        shutdown_timeout_seconds: float = 60.0,
        hostname: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if threads < 1:
            raise ValueError("threads must be >= 1")
        self.client = client
        self.handler = handler
        self.not_found_sink = not_found_sink
        self.worker_id = worker_id
        self.threads = threads
        self.queue_settings = queue_settings or QueueSettings()
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.registry = WorkerRegistry(client)
        self.summary = WorkerRunSummary()
        self._clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._running = False
        self._loop_threads: list[threading.Thread] = []
        self._heartbeat_thread: threading.Thread | None = None
        now = clock()
        self._info = WorkerInfo(
            worker_id=worker_id,
            hostname=hostname or socket.gethostname(),
            threads=threads,
            status=WorkerStatus.STOPPED,
            started_at=now,
            last_heartbeat=now,
        )

    @property
    def info(self) -> WorkerInfo:
        with self._lock:
            return replace(self._info)

    def is_running(self) -> bool:
        return self._running

    def register(self) -> None:
        """Publish a fresh ``starting`` registry entry for this worker."""

        now = self._clock()
        with self._lock:
            self._info.status = WorkerStatus.STARTING
            self._info.started_at = now
            self._info.last_heartbeat = now
            self._info.current_task_id = None
            self._info.tasks_processed = 0
            self._info.tasks_failed = 0
        self._publish()
        logger.info("Worker %s registered on %s", self.worker_id, self._info.hostname)

    def unregister(self) -> None:
        self.registry.remove(self.worker_id)
        logger.info("Worker %s unregistered", self.worker_id)

    def start(self) -> None:
        """Register the worker and launch the task loops and the heartbeat timer."""

        if self._running:
            logger.warning("Worker %s is already running", self.worker_id)
            return
        self.register()
        stop_event = threading.Event()
        self._stop_event = stop_event
        self._running = True
        self._loop_threads = [
            threading.Thread(
                target=self._loop,
                args=(f"{self.worker_id}-{index}", stop_event),
                daemon=True,
                name=f"queue-worker-{self.worker_id}-{index}",
            )
            for index in range(self.threads)
        ]
        for thread in self._loop_threads:
            thread.start()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            args=(stop_event,),
            daemon=True,
            name=f"queue-heartbeat-{self.worker_id}",
        )
        self._heartbeat_thread.start()
        self._set_status(WorkerStatus.ACTIVE)
        logger.info("Worker %s started with %s threads", self.worker_id, self.threads)

    def stop(self, *, unregister: bool = True) -> None:
        """Signal every loop to exit and wait, bounded, for in-flight tasks to finish."""

        if not self._running:
            logger.warning("Worker %s is not running", self.worker_id)
            return
        self._running = False
        self._stop_event.set()
        self._set_status(WorkerStatus.STOPPING)

        deadline = time.monotonic() + self.shutdown_timeout_seconds
        for thread in self._loop_threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        abandoned = [thread.name for thread in self._loop_threads if thread.is_alive()]
        if abandoned:
            logger.warning(
                "Worker %s: %s thread(s) still busy after %.0fs, abandoning: %s",
                self.worker_id,
                len(abandoned),
                self.shutdown_timeout_seconds,
                ", ".join(abandoned),
            )
        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join(timeout=max(1.0, deadline - time.monotonic()))
        self._loop_threads = []
        self._heartbeat_thread = None

        self._set_status(WorkerStatus.STOPPED)
        logger.info("Worker %s stopped", self.worker_id)
        if unregister:
            self.unregister()

    def heartbeat(self) -> None:
        """Refresh ``lastHeartbeat`` while the worker is running."""

        if self._running:
            self._set_status(WorkerStatus.ACTIVE)

    def run_once(self, thread_name: str = "main") -> TaskOutcome:
        """Pop and process at most one task.

        Raises ``redis.RedisError`` on store failures and ``ValueError`` on a malformed
        payload, which is dropped.
        """

        payload = self._pop()
        if payload is None:
            outcome = TaskOutcome.IDLE
        else:
            try:
                task = UpdateTask.from_json(payload)
            except ValueError:
                logger.error("Dropping malformed task payload: %.200s", payload)
                raise
            outcome = self._process(task, thread_name=thread_name)
        with self._lock:
            self.summary.record(outcome)
        return outcome

    def _loop(self, thread_name: str, stop_event: threading.Event) -> None:
        logger.info("Worker %s thread %s started", self.worker_id, thread_name)
        while not stop_event.is_set():
            try:
                outcome = self.run_once(thread_name)
            except Exception:  # noqa: BLE001
                logger.exception("Worker %s thread %s error", self.worker_id, thread_name)
                stop_event.wait(timeout=self.queue_settings.error_backoff_seconds)
                continue
            if outcome == TaskOutcome.DEFERRED:
                stop_event.wait(timeout=self.queue_settings.deferred_poll_seconds)
        logger.info("Worker %s thread %s stopped", self.worker_id, thread_name)

    def _heartbeat_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(timeout=self.heartbeat_interval_seconds):
            try:
                self.heartbeat()
            except redis.RedisError:
                logger.warning("Worker %s heartbeat failed", self.worker_id, exc_info=True)

    def _pop(self) -> str | None:
        payload = self.client.rpop(PRIORITY_QUEUE)
        if payload is not None:
            return payload
        popped = self.client.brpop([PENDING_QUEUE], timeout=self.queue_settings.pop_timeout_seconds)
        if popped is None:
            return None
        _, payload = popped
        return payload

    def _process(self, task: UpdateTask, *, thread_name: str) -> TaskOutcome:
        if not task.is_due(self._clock()):
            self.client.lpush(PENDING_QUEUE, task.to_json())
            logger.debug(
                "Task %s not due until %s, deferred",
                task.task_id,
                task.scheduled_at.isoformat() if task.scheduled_at else "-",
            )
            return TaskOutcome.DEFERRED

        self.client.sadd(PROCESSING_SET, task.task_id)
        with self._lock:
            self._info.current_task_id = task.task_id
        self._record_progress(task, TaskStatus.PROCESSING)
        logger.info(
            "Processing task %s for place %s (thread %s, attempt %s)",
            task.task_id,
            task.place_id,
            thread_name,
            task.attempts + 1,
        )
        try:
            try:
                self.handler.handle(task)
            except Exception as error:  # noqa: BLE001
                classification = classify_task_failure(error)
                if classification.failure_class == FailureClass.NOT_FOUND:
                    return self._handle_not_found(task, error)
                return self._handle_failure(task, error, classification)
            return self._handle_success(task)
        finally:
            with self._lock:
                if self._info.current_task_id == task.task_id:
                    self._info.current_task_id = None
            if self._running:
                self._set_status(WorkerStatus.ACTIVE)

    def _handle_success(self, task: UpdateTask) -> TaskOutcome:
        self.client.srem(PROCESSING_SET, task.task_id)
        self.client.sadd(COMPLETED_SET, str(task.place_id))
        self.client.hincrby(STATS_HASH, STAT_TOTAL_COMPLETED, 1)
        self._record_progress(task, TaskStatus.COMPLETED)
        with self._lock:
            self._info.tasks_processed += 1
        logger.info("Completed task %s for place %s", task.task_id, task.place_id)
        return TaskOutcome.COMPLETED

    def _handle_not_found(self, task: UpdateTask, error: Exception) -> TaskOutcome:
        place_id = getattr(error, "place_id", task.place_id)
        logger.warning("Place not found, marking as not found: %s", error)
        try:
            updated = self.not_found_sink.mark_not_found(place_id)
        except Exception as sink_error:  # noqa: BLE001
            logger.error(
                "Failed to persist not-found status for place %s: %s",
                place_id,
                sink_error,
            )
            task.attempts = self.queue_settings.max_attempts
            self._move_to_failed(task, f"Status update failed: {sink_error}")
            return TaskOutcome.FAILED
        if not updated:
            logger.warning("Place %s has no row to mark as not found", place_id)
        self.client.srem(PROCESSING_SET, task.task_id)
        self.client.sadd(DELETED_SET, str(place_id))
        self.client.hincrby(STATS_HASH, STAT_TOTAL_NOT_FOUND, 1)
        self._record_progress(
            task,
            TaskStatus.NOT_FOUND,
            error="Place not found - status set to NOT_FOUND",
        )
        return TaskOutcome.NOT_FOUND

    def _handle_failure(
        self,
        task: UpdateTask,
        error: Exception,
        classification: TaskFailureClassification,
    ) -> TaskOutcome:
        self.client.srem(PROCESSING_SET, task.task_id)
        max_attempts = self.queue_settings.max_attempts
        if classification.retryable:
            task.attempts += 1
        else:
            task.attempts = max_attempts
        message = summarize_error(error, limit=self.queue_settings.error_max_chars)

        if task.attempts < max_attempts:
            delay = self._compute_retry_delay(attempts=task.attempts)
            task.scheduled_at = self._clock() + timedelta(seconds=delay)
            self.client.lpush(PENDING_QUEUE, task.to_json())
            self.client.hincrby(STATS_HASH, STAT_TOTAL_RETRIED, 1)
            self._record_progress(task, TaskStatus.RETRYING, error=message)
            logger.warning(
                "Re-queued task %s for place %s (attempt %s, retry in %ss, reason=%s): %s",
                task.task_id,
                task.place_id,
                task.attempts,
                delay,
                classification.reason_code,
                message,
            )
            return TaskOutcome.RETRIED

        self._move_to_failed(task, message)
        logger.error(
            "Task %s for place %s failed after %s attempts (reason=%s): %s",
            task.task_id,
            task.place_id,
            task.attempts,
            classification.reason_code,
            message,
        )
        return TaskOutcome.FAILED

    def _move_to_failed(self, task: UpdateTask, message: str) -> None:
        self.client.srem(PROCESSING_SET, task.task_id)
        self.client.sadd(FAILED_SET, str(task.place_id))
        self.client.hincrby(STATS_HASH, STAT_TOTAL_FAILED, 1)
        self._record_progress(task, TaskStatus.FAILED, error=message)
        with self._lock:
            self._info.tasks_failed += 1

    def _compute_retry_delay(self, *, attempts: int) -> int:
        settings = self.queue_settings
        delay = (settings.backoff_base**attempts) * settings.backoff_multiplier_seconds
        return min(settings.backoff_max_seconds, delay)

    def _record_progress(
        self,
        task: UpdateTask,
        status: TaskStatus,
        *,
        error: str | None = None,
    ) -> None:
        now = encode_datetime(self._clock())
        fields = {
            "placeId": str(task.place_id),
            "status": status.value,
            "workerId": self.worker_id,
            "attempts": str(task.attempts),
            "updateMenus": encode_bool(task.update_menus),
            "updateImages": encode_bool(task.update_images),
            "updateReviews": encode_bool(task.update_reviews),
        }
        if status == TaskStatus.PROCESSING:
            fields["startTime"] = now
        elif status in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.NOT_FOUND}:
            fields["endTime"] = now
        if error is not None:
            fields["lastError"] = error[: self.queue_settings.error_max_chars]
        key = progress_key(task.task_id)
        self.client.hset(key, mapping=fields)
        self.client.expire(key, self.queue_settings.progress_ttl_seconds)

    def _set_status(self, status: WorkerStatus) -> None:
        with self._lock:
            self._info.status = status
            self._info.last_heartbeat = self._clock()
        self._publish()

    def _publish(self) -> None:
        self.registry.save(self.info)
