"""Read-side queue monitor and scheduled stale-worker maintenance."""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

import redis

from place_ingest.queue.keys import (
    COMPLETED_SET,
    DELETED_SET,
    FAILED_SET,
    PENDING_QUEUE,
    PRIORITY_QUEUE,
    PROCESSING_SET,
    STAT_FIELDS,
    STATS_HASH,
    progress_key,
)
from place_ingest.queue.models import (
    QueueStats,
    TaskFlags,
    TaskProgress,
    UpdateTask,
    WorkerInfo,
    WorkerStatus,
)
from place_ingest.queue.registry import WorkerRegistry
from place_ingest.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_STALE_WORKER_AFTER = timedelta(minutes=2)


class QueueMonitor:
    """Operator-facing view of queue depth, worker health and task progress."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        stale_worker_after: timedelta = DEFAULT_STALE_WORKER_AFTER,
        hostname: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if stale_worker_after.total_seconds() <= 0:
            raise ValueError("stale_worker_after must be > 0")
        self.client = client
        self.registry = WorkerRegistry(client)
        self.stale_worker_after = stale_worker_after
        self._hostname = hostname
        self._clock = clock

    def current_hostname(self) -> str:
        if self._hostname is None:
            try:
                self._hostname = socket.gethostname()
            except OSError as error:
                logger.warning("Failed to resolve hostname: %s", error)
                self._hostname = "unknown"
        return self._hostname

    def get_workers(self, *, local_only: bool = False) -> dict[str, WorkerInfo]:
        """Return registered workers, optionally only those on this host."""

        workers = self.registry.list_workers()
        if not local_only:
            return workers
        hostname = self.current_hostname()
        return {
            worker_id: info for worker_id, info in workers.items() if info.hostname == hostname
        }

    def get_queue_stats(self, *, local_only: bool = False) -> QueueStats:
        workers = self.get_workers(local_only=local_only)
        return QueueStats(
            pending_count=int(self.client.llen(PENDING_QUEUE)),
            priority_count=int(self.client.llen(PRIORITY_QUEUE)),
            processing_count=int(self.client.scard(PROCESSING_SET)),
            completed_count=int(self.client.scard(COMPLETED_SET)),
            failed_count=int(self.client.scard(FAILED_SET)),
            deleted_count=int(self.client.scard(DELETED_SET)),
            active_workers=sum(
                1 for info in workers.values() if info.status == WorkerStatus.ACTIVE
            ),
            total_workers=len(workers),
            last_updated=self._clock(),
            workers=workers,
        )

    def get_task_progress(self, task_id: str) -> TaskProgress | None:
        """Return the task's progress record, or ``None`` if absent or expired."""

        values = self.client.hgetall(progress_key(task_id))
        if not values:
            return None
        return TaskProgress.from_hash(task_id, values)

    def get_failed_place_ids(self) -> list[int]:
        return _sorted_place_ids(self.client.smembers(FAILED_SET))

    def get_counters(self) -> dict[str, int]:
        raw = self.client.hgetall(STATS_HASH)
        counters = {name: 0 for name in STAT_FIELDS}
        for name, value in raw.items():
            try:
                counters[name] = int(value)
            except ValueError:
                logger.warning("Ignoring non-integer counter %s=%r", name, value)
        return counters

    def retry_failed_tasks(self, flags: TaskFlags | None = None) -> int:
        """Re-enqueue every place in the failed set as a fresh task and drain the set."""

        count = 0
        for member in self.client.smembers(FAILED_SET):
            try:
                place_id = int(member)
            except ValueError:
                logger.error("Skipping malformed place id in failed set: %r", member)
                continue
            task = UpdateTask.create(place_id, flags)
            self.client.lpush(PENDING_QUEUE, task.to_json())
            self.client.srem(FAILED_SET, member)
            count += 1
        logger.info("Re-queued %s failed tasks", count)
        return count

    def cleanup_stale_workers(self) -> list[str]:
        """Evict workers whose last heartbeat is older than the staleness threshold."""

        evicted = self.registry.evict_stale(now=self._clock(), threshold=self.stale_worker_after)
        for info in evicted:
            logger.warning(
                "Removed stale worker: %s (host=%s, last heartbeat: %s)",
                info.worker_id,
                info.hostname,
                info.last_heartbeat.isoformat(),
            )
        return [info.worker_id for info in evicted]

    def clear_completed_set(self) -> None:
        self.client.delete(COMPLETED_SET)
        logger.info("Cleared completed set")

    def clear_failed_set(self) -> None:
        self.client.delete(FAILED_SET)
        logger.info("Cleared failed set")


class MaintenanceScheduler:
    """Background timer that runs the stale-worker sweep on a fixed interval."""

    def __init__(self, monitor: QueueMonitor, *, interval_seconds: float = 60.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.monitor = monitor
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> list[str]:
        try:
            return self.monitor.cleanup_stale_workers()
        except redis.RedisError:
            logger.exception("Stale worker sweep failed")
            return []

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="queue-maintenance",
        )
        self._thread.start()
        logger.info("Maintenance scheduler started (interval=%.0fs)", self.interval_seconds)

    def stop(self, *, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Maintenance scheduler stopped")

    def _loop(self) -> None:
        while not self._stop_event.wait(timeout=self.interval_seconds):
            self.run_once()


def _sorted_place_ids(members: set[str]) -> list[int]:
    place_ids: list[int] = []
    for member in members:
        try:
            place_ids.append(int(member))
        except ValueError:
            logger.warning("Ignoring malformed place id %r", member)
    return sorted(place_ids)
