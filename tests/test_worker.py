from __future__ import annotations

import threading
import time
from datetime import timedelta

import allure
import pytest

from place_ingest.config import QueueSettings
from place_ingest.places.models import CrawlStatus
from place_ingest.places.repository import PlaceRepository
from place_ingest.queue.failures import NonRetryableTaskError, PlaceNotFoundError
from place_ingest.queue.keys import (
    COMPLETED_SET,
    DELETED_SET,
    FAILED_SET,
    PENDING_QUEUE,
    PROCESSING_SET,
    STAT_TOTAL_COMPLETED,
    STAT_TOTAL_FAILED,
    STAT_TOTAL_NOT_FOUND,
    STAT_TOTAL_RETRIED,
    STATS_HASH,
    progress_key,
)
from place_ingest.queue.models import TaskFlags, TaskOutcome, UpdateTask, WorkerStatus
from place_ingest.queue.producer import QueueProducer
from place_ingest.queue.registry import WorkerRegistry
from place_ingest.queue.worker import QueueWorker

pytestmark = [
    allure.epic("Update Queue"),
    allure.feature("Worker"),
]


class ScriptedHandler:
    """Raise the queued errors in order, then succeed."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.handled: list[int] = []

    def handle(self, task: UpdateTask) -> None:
        self.handled.append(task.place_id)
        if self.errors:
            raise self.errors.pop(0)


class AlwaysFailingHandler:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    def handle(self, task: UpdateTask) -> None:
        self.calls += 1
        raise self.error


class BlockingHandler:
    """Block inside ``handle`` until released."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def handle(self, task: UpdateTask) -> None:
        self.started.set()
        self.release.wait(timeout=10)


class RecordingSink:
    def __init__(self) -> None:
        self.marked: list[int] = []

    def mark_not_found(self, place_id: int) -> bool:
        self.marked.append(place_id)
        return True


class BrokenSink:
    def mark_not_found(self, place_id: int) -> bool:
        raise RuntimeError("database is locked")


def _worker(redis_client, handler, sink=None, **kwargs) -> QueueWorker:
    kwargs.setdefault("queue_settings", QueueSettings(max_attempts=3, backoff_multiplier_seconds=0))
    return QueueWorker(
        client=redis_client,
        handler=handler,
        not_found_sink=sink or RecordingSink(),
        worker_id="w-test",
        hostname="host-a",
        **kwargs,
    )


def test_flaky_task_is_retried_until_completed(redis_client) -> None:
    handler = ScriptedHandler(RuntimeError("timeout"), RuntimeError("timeout"))
    worker = _worker(
        redis_client,
        handler,
        queue_settings=QueueSettings(max_attempts=5, backoff_multiplier_seconds=0),
    )
    QueueProducer(redis_client).push(
        42,
        TaskFlags(update_menus=True, update_images=False, update_reviews=False),
        task_id="t1",
    )

    outcomes = [worker.run_once() for _ in range(3)]

    assert outcomes == [TaskOutcome.RETRIED, TaskOutcome.RETRIED, TaskOutcome.COMPLETED]
    progress = redis_client.hgetall(progress_key("t1"))
    assert progress["status"] == "completed"
    assert progress["attempts"] == "2"
    assert progress["updateMenus"] == "true"
    assert progress["updateImages"] == "false"
    assert progress["lastError"] == "timeout"
    assert progress["startTime"]
    assert progress["endTime"]
    assert redis_client.ttl(progress_key("t1")) > 0
    assert redis_client.sismember(COMPLETED_SET, "42")
    assert not redis_client.sismember(FAILED_SET, "42")
    assert redis_client.scard(PROCESSING_SET) == 0
    assert redis_client.hget(STATS_HASH, STAT_TOTAL_RETRIED) == "2"
    assert redis_client.hget(STATS_HASH, STAT_TOTAL_COMPLETED) == "1"
    assert worker.summary.completed == 1
    assert worker.summary.retried == 2


def test_missing_place_is_marked_not_found_without_retry(
    redis_client,
    place_repository: PlaceRepository,
) -> None:
    place_repository.add_place("Closed Cafe", place_id=99)
    handler = AlwaysFailingHandler(PlaceNotFoundError(99, "Closed Cafe"))
    worker = _worker(redis_client, handler, sink=place_repository)
    QueueProducer(redis_client).push(99, task_id="t99")

    outcome = worker.run_once()

    assert outcome == TaskOutcome.NOT_FOUND
    assert handler.calls == 1
    assert redis_client.sismember(DELETED_SET, "99")
    assert not redis_client.sismember(FAILED_SET, "99")
    assert redis_client.llen(PENDING_QUEUE) == 0
    assert redis_client.hget(STATS_HASH, STAT_TOTAL_NOT_FOUND) == "1"
    assert redis_client.hget(progress_key("t99"), "status") == "not_found"
    place = place_repository.get_place(99)
    assert place is not None
    assert place.crawl_status == CrawlStatus.NOT_FOUND.value


def test_task_fails_after_max_attempts(redis_client) -> None:
    handler = AlwaysFailingHandler(ConnectionError("upstream down"))
    worker = _worker(redis_client, handler)
    QueueProducer(redis_client).push(7, task_id="t7")

    outcomes = [worker.run_once() for _ in range(3)]

    assert outcomes == [TaskOutcome.RETRIED, TaskOutcome.RETRIED, TaskOutcome.FAILED]
    assert handler.calls == 3
    progress = redis_client.hgetall(progress_key("t7"))
    assert progress["status"] == "failed"
    assert progress["attempts"] == "3"
    assert progress["lastError"] == "upstream down"
    assert redis_client.sismember(FAILED_SET, "7")
    assert redis_client.llen(PENDING_QUEUE) == 0
    assert redis_client.hget(STATS_HASH, STAT_TOTAL_FAILED) == "1"
    assert worker.info.tasks_failed == 1


def test_non_retryable_error_fails_immediately(redis_client) -> None:
    handler = AlwaysFailingHandler(NonRetryableTaskError("invalid coordinates"))
    worker = _worker(redis_client, handler)
    QueueProducer(redis_client).push(8, task_id="t8")

    assert worker.run_once() == TaskOutcome.FAILED
    assert handler.calls == 1
    assert redis_client.hget(progress_key("t8"), "attempts") == "3"
    assert redis_client.sismember(FAILED_SET, "8")
    assert redis_client.hget(STATS_HASH, STAT_TOTAL_RETRIED) is None


def test_not_found_sink_failure_moves_task_to_failed(redis_client) -> None:
    worker = _worker(redis_client, AlwaysFailingHandler(PlaceNotFoundError(5)), sink=BrokenSink())
    QueueProducer(redis_client).push(5, task_id="t5")

    assert worker.run_once() == TaskOutcome.FAILED
    progress = redis_client.hgetall(progress_key("t5"))
    assert progress["status"] == "failed"
    assert progress["attempts"] == "3"
    assert progress["lastError"].startswith("Status update failed")
    assert redis_client.sismember(FAILED_SET, "5")
    assert not redis_client.sismember(DELETED_SET, "5")


def test_retry_is_scheduled_with_exponential_backoff(redis_client, manual_clock) -> None:
    clock = manual_clock
    handler = ScriptedHandler(RuntimeError("boom"))
    worker = _worker(redis_client, handler, queue_settings=QueueSettings(), clock=clock)
    QueueProducer(redis_client).push(3, task_id="t3")

    assert worker.run_once() == TaskOutcome.RETRIED

    requeued = UpdateTask.from_json(redis_client.lindex(PENDING_QUEUE, 0))
    assert requeued.attempts == 1
    assert requeued.scheduled_at == clock.now + timedelta(seconds=60)

    assert worker.run_once() == TaskOutcome.DEFERRED
    assert redis_client.llen(PENDING_QUEUE) == 1
    assert handler.handled == [3]

    clock.advance(60)
    assert worker.run_once() == TaskOutcome.COMPLETED
    assert handler.handled == [3, 3]
    assert worker.summary.deferred == 1


def test_retry_delay_is_capped(redis_client, manual_clock) -> None:
    clock = manual_clock
    worker = _worker(
        redis_client,
        ScriptedHandler(RuntimeError("boom")),
        queue_settings=QueueSettings(backoff_max_seconds=45),
        clock=clock,
    )
    QueueProducer(redis_client).push(3)

    worker.run_once()

    requeued = UpdateTask.from_json(redis_client.lindex(PENDING_QUEUE, 0))
    assert requeued.scheduled_at == clock.now + timedelta(seconds=45)


def test_priority_queue_is_drained_first(redis_client) -> None:
    handler = ScriptedHandler()
    worker = _worker(redis_client, handler)
    producer = QueueProducer(redis_client)
    producer.push_batch([1, 2])
    producer.push(3, priority=True)

    for _ in range(3):
        assert worker.run_once() == TaskOutcome.COMPLETED

    assert handler.handled == [3, 1, 2]


def test_malformed_payload_is_dropped(redis_client) -> None:
    worker = _worker(redis_client, ScriptedHandler())
    redis_client.lpush(PENDING_QUEUE, "{not json")

    with pytest.raises(ValueError):
        worker.run_once()

    assert redis_client.llen(PENDING_QUEUE) == 0


def test_rejects_non_positive_thread_count(redis_client) -> None:
    with pytest.raises(ValueError, match="threads"):
        _worker(redis_client, ScriptedHandler(), threads=0)


def test_threads_drain_queue_and_registry_tracks_lifecycle(
    redis_client,
    fast_queue_settings: QueueSettings,
) -> None:
    handler = ScriptedHandler()
    registry = WorkerRegistry(redis_client)
    worker = _worker(
        redis_client,
        handler,
        threads=2,
        queue_settings=fast_queue_settings,
        heartbeat_interval_seconds=0.05,
        shutdown_timeout_seconds=5.0,
    )
    QueueProducer(redis_client).push_batch(range(1, 11))

    worker.start()
    try:
        assert worker.is_running()
        deadline = time.monotonic() + 10
        while redis_client.scard(COMPLETED_SET) < 10 and time.monotonic() < deadline:
            time.sleep(0.02)
        entry = registry.get("w-test")
        assert entry is not None
        assert entry.status == WorkerStatus.ACTIVE
        assert entry.hostname == "host-a"
        assert entry.threads == 2
    finally:
        worker.stop(unregister=False)

    assert sorted(handler.handled) == list(range(1, 11))
    assert redis_client.scard(COMPLETED_SET) == 10
    assert not worker.is_running()
    stopped = registry.get("w-test")
    assert stopped is not None
    assert stopped.status == WorkerStatus.STOPPED
    assert stopped.tasks_processed == 10

    worker.unregister()
    assert registry.get("w-test") is None


def test_stop_unregisters_by_default(redis_client, fast_queue_settings: QueueSettings) -> None:
    worker = _worker(
        redis_client,
        ScriptedHandler(),
        threads=1,
        queue_settings=fast_queue_settings,
        shutdown_timeout_seconds=5.0,
    )

    worker.start()
    worker.stop()

    assert WorkerRegistry(redis_client).get("w-test") is None


def test_heartbeat_stays_fresh_while_handler_is_blocked(
    redis_client,
    fast_queue_settings: QueueSettings,
) -> None:
    handler = BlockingHandler()
    registry = WorkerRegistry(redis_client)
    worker = _worker(
        redis_client,
        handler,
        threads=1,
        queue_settings=fast_queue_settings,
        heartbeat_interval_seconds=0.05,
        shutdown_timeout_seconds=5.0,
    )
    QueueProducer(redis_client).push(1, task_id="tx")

    worker.start()
    try:
        assert handler.started.wait(timeout=5)
        first = registry.get("w-test")
        time.sleep(0.25)
        second = registry.get("w-test")

        assert first is not None
        assert second is not None
        assert second.last_heartbeat > first.last_heartbeat
        assert second.current_task_id == "tx"
        assert second.status == WorkerStatus.ACTIVE
    finally:
        handler.release.set()
        worker.stop()


def test_restart_does_not_revive_abandoned_threads(
    redis_client,
    fast_queue_settings: QueueSettings,
) -> None:
    handler = BlockingHandler()
    worker = _worker(
        redis_client,
        handler,
        threads=1,
        queue_settings=fast_queue_settings,
        heartbeat_interval_seconds=0.05,
        shutdown_timeout_seconds=0.1,
    )
    QueueProducer(redis_client).push(1, task_id="slow")

    worker.start()
    assert handler.started.wait(timeout=5)
    abandoned = list(worker._loop_threads)
    worker.stop(unregister=False)
    assert all(thread.is_alive() for thread in abandoned)

    worker.start()
    try:
        handler.release.set()
        for thread in abandoned:
            thread.join(timeout=5)
        assert not any(thread.is_alive() for thread in abandoned)
        assert len(worker._loop_threads) == 1
        assert all(thread.is_alive() for thread in worker._loop_threads)
    finally:
        worker.stop()
