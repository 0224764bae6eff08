"""Controllers for queue, worker and monitor CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import redis

from place_ingest.config import Settings
from place_ingest.places.repository import PlaceRepository
from place_ingest.queue.handlers import load_task_handler
from place_ingest.queue.models import QueueStats, TaskFlags, WorkerInfo
from place_ingest.queue.monitor import MaintenanceScheduler, QueueMonitor
from place_ingest.queue.producer import QueueProducer
from place_ingest.queue.store import build_redis_client
from place_ingest.queue.worker import QueueWorker

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Settings], redis.Redis]


@dataclass(slots=True)
class QueuePushCommand:
    """CLI input for enqueueing explicit place ids."""

    place_ids: tuple[int, ...]
    flags: TaskFlags
    priority: bool = False


@dataclass(slots=True)
class QueuePushAllCommand:
    """CLI input for enqueueing every pending place."""

    db_path: Path | None
    flags: TaskFlags


@dataclass(slots=True)
class QueueStatsCommand:
    """CLI input for queue/worker snapshots."""

    local_only: bool = False


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for a long-running worker process."""

    db_path: Path | None
    threads: int | None = None
    worker_id: str | None = None
    handler: str | None = None
    with_maintenance: bool = False


def _default_client_factory(settings: Settings) -> redis.Redis:
    return build_redis_client(settings.redis, settings.queue)


class QueueCliController:
    """Coordinates queue, worker and monitor CLI operations."""

    def __init__(self, client_factory: ClientFactory = _default_client_factory) -> None:
        self.client_factory = client_factory

    def push(self, command: QueuePushCommand) -> list[str]:
        settings = _load_settings()
        producer = QueueProducer(self.client_factory(settings))
        if len(command.place_ids) == 1 or command.priority:
            task_ids = [
                producer.push(place_id, command.flags, priority=command.priority)
                for place_id in command.place_ids
            ]
            return [
                f"Task pushed: task_id={task_id} place_id={place_id} priority={command.priority}"
                for task_id, place_id in zip(task_ids, command.place_ids, strict=True)
            ]
        count = producer.push_batch(command.place_ids, command.flags)
        return [f"Batch pushed: tasks={count}"]

    def push_all(self, command: QueuePushAllCommand) -> list[str]:
        settings = _load_settings(db_path=command.db_path)
        producer = QueueProducer(self.client_factory(settings))
        with _place_repository(settings) as places:
            count = producer.push_all_pending(places, command.flags)
        return [f"Pending places pushed: tasks={count}"]

    def stats(self, command: QueueStatsCommand) -> list[str]:
        settings = _load_settings()
        monitor = self._monitor(settings)
        stats = monitor.get_queue_stats(local_only=command.local_only)
        counters = monitor.get_counters()
        return [
            *_render_stats(stats),
            "Counters: " + " ".join(f"{name}={value}" for name, value in counters.items()),
        ]

    def task(self, task_id: str) -> list[str]:
        settings = _load_settings()
        progress = self._monitor(settings).get_task_progress(task_id)
        if progress is None:
            return [f"Task not found (unknown or expired): {task_id}"]
        return [
            f"Task: {progress.task_id}",
            f"Place: {progress.place_id}",
            f"Status: {progress.status}",
            f"Worker: {progress.worker_id or '-'}",
            f"Attempts: {progress.attempts}",
            "Flags: "
            f"menus={progress.update_menus} images={progress.update_images} "
            f"reviews={progress.update_reviews}",
            f"Started: {progress.start_time.isoformat() if progress.start_time else '-'}",
            f"Ended: {progress.end_time.isoformat() if progress.end_time else '-'}",
            f"Last error: {progress.last_error or '-'}",
        ]

    def workers(self, command: QueueStatsCommand) -> list[str]:
        settings = _load_settings()
        workers = self._monitor(settings).get_workers(local_only=command.local_only)
        if not workers:
            return ["No registered workers."]
        return [_render_worker(info) for _, info in sorted(workers.items())]

    def failed(self) -> list[str]:
        settings = _load_settings()
        place_ids = self._monitor(settings).get_failed_place_ids()
        return [f"Failed places: {len(place_ids)}", *(str(place_id) for place_id in place_ids)]

    def retry_failed(self, flags: TaskFlags) -> list[str]:
        settings = _load_settings()
        count = self._monitor(settings).retry_failed_tasks(flags)
        return [f"Failed tasks re-queued: {count}"]

    def clear(self) -> list[str]:
        settings = _load_settings()
        QueueProducer(self.client_factory(settings)).clear_queues()
        return ["Pending and priority queues cleared."]

    def clear_completed(self) -> list[str]:
        settings = _load_settings()
        self._monitor(settings).clear_completed_set()
        return ["Completed set cleared."]

    def clear_failed(self) -> list[str]:
        settings = _load_settings()
        self._monitor(settings).clear_failed_set()
        return ["Failed set cleared."]

    def cleanup_workers(self) -> list[str]:
        settings = _load_settings()
        evicted = self._monitor(settings).cleanup_stale_workers()
        return [f"Stale workers removed: {len(evicted)}", *evicted]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        """Run the worker pool in the foreground until SIGINT/SIGTERM."""

        settings = _load_settings(db_path=command.db_path)
        if command.threads is not None:
            settings.worker.threads = command.threads
        if command.worker_id:
            settings.worker.worker_id = command.worker_id
        if command.handler:
            settings.worker.task_handler = command.handler
        settings.validate()
        if not settings.worker.enabled:
            return ["Queue worker is disabled (PLACE_INGEST_WORKER_ENABLED=false)."]

        client = self.client_factory(settings)
        with _place_repository(settings) as places:
            worker = QueueWorker(
                client=client,
                handler=load_task_handler(settings.worker.task_handler, places),
                not_found_sink=places,
                worker_id=settings.worker.worker_id,
                threads=settings.worker.threads,
                queue_settings=settings.queue,
                heartbeat_interval_seconds=settings.worker.heartbeat_interval_seconds,
                shutdown_timeout_seconds=settings.worker.shutdown_timeout_seconds,
            )
            scheduler = (
                MaintenanceScheduler(
                    self._monitor(settings, client=client),
                    interval_seconds=settings.monitor.cleanup_interval_seconds,
                )
                if command.with_maintenance
                else None
            )
            stop_event = threading.Event()
            with _stop_on_signals(stop_event):
                worker.start()
                if scheduler is not None:
                    scheduler.start()
                try:
                    stop_event.wait()
                finally:
                    if scheduler is not None:
                        scheduler.stop()
                    worker.stop()
            summary = worker.summary

        return [
            f"Worker {settings.worker.worker_id} summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"retried={summary.retried} failed={summary.failed} "
            f"not_found={summary.not_found} deferred={summary.deferred}",
        ]

    def run_monitor(self) -> list[str]:
        """Run the stale-worker sweep in the foreground until SIGINT/SIGTERM."""

        settings = _load_settings()
        scheduler = MaintenanceScheduler(
            self._monitor(settings),
            interval_seconds=settings.monitor.cleanup_interval_seconds,
        )
        evicted = len(scheduler.run_once())
        stop_event = threading.Event()
        with _stop_on_signals(stop_event):
            while not stop_event.wait(timeout=settings.monitor.cleanup_interval_seconds):
                evicted += len(scheduler.run_once())
        return [f"Monitor stopped: stale workers removed={evicted}"]

    def _monitor(self, settings: Settings, *, client: redis.Redis | None = None) -> QueueMonitor:
        return QueueMonitor(
            client or self.client_factory(settings),
            stale_worker_after=timedelta(seconds=settings.monitor.stale_worker_after_seconds),
        )


def _load_settings(*, db_path: Path | None = None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _place_repository(settings: Settings) -> Iterator[PlaceRepository]:
    repository = PlaceRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _stop_on_signals(stop_event: threading.Event) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, shutting down", name)
        stop_event.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _render_stats(stats: QueueStats) -> list[str]:
    lines = [
        "Queue: "
        f"pending={stats.pending_count} priority={stats.priority_count} "
        f"processing={stats.processing_count} completed={stats.completed_count} "
        f"failed={stats.failed_count} deleted={stats.deleted_count}",
        f"Workers: active={stats.active_workers} total={stats.total_workers}",
    ]
    lines.extend(_render_worker(info) for _, info in sorted(stats.workers.items()))
    return lines


def _render_worker(info: WorkerInfo) -> str:
    return (
        f"- {info.worker_id} host={info.hostname} status={info.status.value} "
        f"threads={info.threads} processed={info.tasks_processed} failed={info.tasks_failed} "
        f"heartbeat={info.last_heartbeat.isoformat()} task={info.current_task_id or '-'}"
    )
