from __future__ import annotations

from pathlib import Path

import allure
import pytest

from place_ingest.config import (
    DEFAULT_TASK_HANDLER,
    MonitorSettings,
    QueueSettings,
    RedisSettings,
    Settings,
    ShardingSettings,
    WorkerSettings,
)

pytestmark = [
    allure.epic("Runtime Configuration"),
    allure.feature("Settings & Validation"),
]


def test_from_env_defaults(monkeypatch) -> None:
    for name in (
        "PLACE_INGEST_DB_PATH",
        "PLACE_INGEST_REDIS_URL",
        "PLACE_INGEST_QUEUE_MAX_ATTEMPTS",
        "PLACE_INGEST_WORKER_THREADS",
        "PLACE_INGEST_WORKER_ID",
        "PLACE_INGEST_TASK_HANDLER",
        "PLACE_INGEST_RESUME_POLICY",
        "PLACE_INGEST_QUEUE_ERROR_BACKOFF_SECONDS",
        "PLACE_INGEST_QUEUE_DEFERRED_POLL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".place_ingest.db")
    assert settings.redis.url == "redis://localhost:6379/0"
    assert settings.queue.max_attempts == 3
    assert settings.queue.backoff_multiplier_seconds == 30
    assert settings.worker.threads == 2
    assert settings.worker.heartbeat_interval_seconds == 10.0
    assert settings.worker.task_handler == DEFAULT_TASK_HANDLER
    assert len(settings.worker.worker_id) == 8
    assert settings.monitor.cleanup_interval_seconds == 60.0
    assert settings.queue.error_backoff_seconds == 1.0
    assert settings.queue.deferred_poll_seconds == 1.0
    assert settings.monitor.stale_worker_after_seconds == 120
    assert settings.checkpoint.resume_policy == "resume"
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PLACE_INGEST_REDIS_URL", "redis://cache:6380/2")
    monkeypatch.setenv("PLACE_INGEST_QUEUE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("PLACE_INGEST_WORKER_THREADS", "4")
    monkeypatch.setenv("PLACE_INGEST_WORKER_ID", "worker-a")
    monkeypatch.setenv("PLACE_INGEST_WORKER_ENABLED", "off")
    monkeypatch.setenv("PLACE_INGEST_SHARD_WORKER_INDEX", "2")
    monkeypatch.setenv("PLACE_INGEST_SHARD_TOTAL_WORKERS", "3")
    monkeypatch.setenv("PLACE_INGEST_RESUME_POLICY", " FRESH ")
    monkeypatch.setenv("PLACE_INGEST_QUEUE_ERROR_BACKOFF_SECONDS", "2.5")
    monkeypatch.setenv("PLACE_INGEST_QUEUE_DEFERRED_POLL_SECONDS", "0.25")

    settings = Settings.from_env(db_path=tmp_path / "custom.db")

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.redis.url == "redis://cache:6380/2"
    assert settings.queue.max_attempts == 5
    assert settings.queue.error_backoff_seconds == 2.5
    assert settings.queue.deferred_poll_seconds == 0.25
    assert settings.worker.threads == 4
    assert settings.worker.worker_id == "worker-a"
    assert settings.worker.enabled is False
    assert settings.sharding.worker_index == 2
    assert settings.sharding.total_workers == 3
    assert settings.checkpoint.resume_policy == "fresh"
    settings.validate()


def test_invalid_boolean_env_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("PLACE_INGEST_WORKER_ENABLED", "maybe")

    with pytest.raises(ValueError, match="PLACE_INGEST_WORKER_ENABLED"):
        Settings.from_env()


def test_validate_rejects_non_redis_url() -> None:
    settings = Settings(redis=RedisSettings(url="http://localhost:6379"))

    with pytest.raises(ValueError, match="PLACE_INGEST_REDIS_URL"):
        settings.validate()


def test_validate_rejects_staleness_threshold_within_heartbeat_interval() -> None:
    settings = Settings(
        worker=WorkerSettings(heartbeat_interval_seconds=30.0),
        monitor=MonitorSettings(stale_worker_after_seconds=30),
    )

    with pytest.raises(ValueError, match="STALE_WORKER_AFTER_SECONDS"):
        settings.validate()


def test_validate_rejects_zero_threads() -> None:
    settings = Settings(worker=WorkerSettings(threads=0))

    with pytest.raises(ValueError, match="PLACE_INGEST_WORKER_THREADS"):
        settings.validate()


@pytest.mark.parametrize(
    ("worker_index", "total_workers", "page_size", "match"),
    [
        (0, 0, 100, "TOTAL_WORKERS"),
        (3, 3, 100, "WORKER_INDEX"),
        (-1, 3, 100, "WORKER_INDEX"),
        (0, 3, 0, "PAGE_SIZE"),
    ],
)
def test_validate_sharding_rejects_inconsistent_assignment(
    worker_index: int,
    total_workers: int,
    page_size: int,
    match: str,
) -> None:
    settings = Settings(
        sharding=ShardingSettings(
            worker_index=worker_index,
            total_workers=total_workers,
            page_size=page_size,
        ),
    )

    with pytest.raises(ValueError, match=match):
        settings.validate_sharding()


def test_validate_rejects_unknown_resume_policy(monkeypatch) -> None:
    monkeypatch.setenv("PLACE_INGEST_RESUME_POLICY", "sometimes")
    settings = Settings.from_env()

    with pytest.raises(ValueError, match="PLACE_INGEST_RESUME_POLICY"):
        settings.validate()


def test_validate_rejects_negative_loop_waits() -> None:
    settings = Settings(queue=QueueSettings(deferred_poll_seconds=-1.0))

    with pytest.raises(ValueError, match="PLACE_INGEST_QUEUE_DEFERRED_POLL_SECONDS"):
        settings.validate()
