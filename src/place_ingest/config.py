"""Runtime configuration for queue workers, checkpoints and sharded readers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse
from uuid import uuid4

DEFAULT_TASK_HANDLER = "place_ingest.queue.handlers:MarkCrawledHandler"


@dataclass(slots=True)
class RedisSettings:
    """Coordination store connection settings."""

    url: str = "redis://localhost:6379/0"
    socket_timeout_seconds: float = 5.0


@dataclass(slots=True)
class QueueSettings:
    """Retry and progress-tracking policy shared by producers and workers."""

    max_attempts: int = 3
    backoff_base: int = 2
    backoff_multiplier_seconds: int = 30
    backoff_max_seconds: int = 3_600
    pop_timeout_seconds: int = 5
    progress_ttl_seconds: int = 86_400
    error_max_chars: int = 500
    error_backoff_seconds: float = 1.0
    deferred_poll_seconds: float = 1.0


@dataclass(slots=True)
class WorkerSettings:
    """Per-process worker pool settings."""

    worker_id: str = field(default_factory=lambda: uuid4().hex[:8])
    threads: int = 2
    enabled: bool = True
    heartbeat_interval_seconds: float = 10.0
    shutdown_timeout_seconds: float = 60.0
    task_handler: str = DEFAULT_TASK_HANDLER


@dataclass(slots=True)
class MonitorSettings:
    """Maintenance sweep settings."""

    cleanup_interval_seconds: float = 60.0
    stale_worker_after_seconds: int = 120


@dataclass(slots=True)
class ShardingSettings:
    """Modulo partitioning of the places table across worker processes."""

    worker_index: int = 0
    total_workers: int = 1
    page_size: int = 100


@dataclass(slots=True)
class CheckpointSettings:
    """Region-partitioned batch run settings."""

    batch_name: str = "place-ingestion-batch"
    region_type: str = "sigungu"
    resume_policy: str = "resume"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".place_ingest.db")
    log_level: str = "INFO"
    redis: RedisSettings = field(default_factory=RedisSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    sharding: ShardingSettings = field(default_factory=ShardingSettings)
    checkpoint: CheckpointSettings = field(default_factory=CheckpointSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_id = os.getenv("PLACE_INGEST_WORKER_ID", "").strip() or uuid4().hex[:8]
        return cls(
            db_path=db_path or Path(os.getenv("PLACE_INGEST_DB_PATH", ".place_ingest.db")),
            log_level=os.getenv("PLACE_INGEST_LOG_LEVEL", "INFO").strip().upper(),
            redis=RedisSettings(
                url=os.getenv("PLACE_INGEST_REDIS_URL", "redis://localhost:6379/0"),
                socket_timeout_seconds=float(
                    os.getenv("PLACE_INGEST_REDIS_SOCKET_TIMEOUT_SECONDS", "5.0"),
                ),
            ),
            queue=QueueSettings(
                max_attempts=int(os.getenv("PLACE_INGEST_QUEUE_MAX_ATTEMPTS", "3")),
                backoff_base=int(os.getenv("PLACE_INGEST_QUEUE_BACKOFF_BASE", "2")),
                backoff_multiplier_seconds=int(
                    os.getenv("PLACE_INGEST_QUEUE_BACKOFF_MULTIPLIER_SECONDS", "30"),
                ),
                backoff_max_seconds=int(
                    os.getenv("PLACE_INGEST_QUEUE_BACKOFF_MAX_SECONDS", "3600"),
                ),
                pop_timeout_seconds=int(os.getenv("PLACE_INGEST_QUEUE_POP_TIMEOUT_SECONDS", "5")),
                progress_ttl_seconds=int(
                    os.getenv("PLACE_INGEST_QUEUE_PROGRESS_TTL_SECONDS", "86400"),
                ),
                error_max_chars=int(os.getenv("PLACE_INGEST_QUEUE_ERROR_MAX_CHARS", "500")),
                error_backoff_seconds=float(
                    os.getenv("PLACE_INGEST_QUEUE_ERROR_BACKOFF_SECONDS", "1.0"),
                ),
                deferred_poll_seconds=float(
                    os.getenv("PLACE_INGEST_QUEUE_DEFERRED_POLL_SECONDS", "1.0"),
                ),
            ),
            worker=WorkerSettings(
                worker_id=worker_id,
                threads=int(os.getenv("PLACE_INGEST_WORKER_THREADS", "2")),
                enabled=_env_bool("PLACE_INGEST_WORKER_ENABLED", default=True),
                heartbeat_interval_seconds=float(
                    os.getenv("PLACE_INGEST_WORKER_HEARTBEAT_SECONDS", "10"),
                ),
                shutdown_timeout_seconds=float(
                    os.getenv("PLACE_INGEST_WORKER_SHUTDOWN_TIMEOUT_SECONDS", "60"),
                ),
                task_handler=os.getenv("PLACE_INGEST_TASK_HANDLER", DEFAULT_TASK_HANDLER),
            ),
            monitor=MonitorSettings(
                cleanup_interval_seconds=float(
                    os.getenv("PLACE_INGEST_MONITOR_CLEANUP_INTERVAL_SECONDS", "60"),
                ),
                stale_worker_after_seconds=int(
                    os.getenv("PLACE_INGEST_MONITOR_STALE_WORKER_AFTER_SECONDS", "120"),
                ),
            ),
            sharding=ShardingSettings(
                worker_index=int(os.getenv("PLACE_INGEST_SHARD_WORKER_INDEX", "0")),
                total_workers=int(os.getenv("PLACE_INGEST_SHARD_TOTAL_WORKERS", "1")),
                page_size=int(os.getenv("PLACE_INGEST_SHARD_PAGE_SIZE", "100")),
            ),
            checkpoint=CheckpointSettings(
                batch_name=os.getenv("PLACE_INGEST_BATCH_NAME", "place-ingestion-batch"),
                region_type=os.getenv("PLACE_INGEST_REGION_TYPE", "sigungu"),
                resume_policy=os.getenv("PLACE_INGEST_RESUME_POLICY", "resume").strip().lower(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        _validate_redis_url(self.redis.url)
        if self.queue.max_attempts < 1:
            raise ValueError("PLACE_INGEST_QUEUE_MAX_ATTEMPTS must be >= 1.")
        if self.queue.backoff_base < 1:
            raise ValueError("PLACE_INGEST_QUEUE_BACKOFF_BASE must be >= 1.")
        if self.queue.backoff_multiplier_seconds < 0:
            raise ValueError("PLACE_INGEST_QUEUE_BACKOFF_MULTIPLIER_SECONDS must be >= 0.")
        if self.queue.pop_timeout_seconds < 1:
            raise ValueError("PLACE_INGEST_QUEUE_POP_TIMEOUT_SECONDS must be >= 1.")
        if self.queue.error_backoff_seconds < 0:
            raise ValueError("PLACE_INGEST_QUEUE_ERROR_BACKOFF_SECONDS must be >= 0.")
        if self.queue.deferred_poll_seconds < 0:
            raise ValueError("PLACE_INGEST_QUEUE_DEFERRED_POLL_SECONDS must be >= 0.")
        if self.worker.threads < 1:
            raise ValueError("PLACE_INGEST_WORKER_THREADS must be >= 1.")
        if self.worker.heartbeat_interval_seconds <= 0:
            raise ValueError("PLACE_INGEST_WORKER_HEARTBEAT_SECONDS must be > 0.")
        if self.monitor.stale_worker_after_seconds <= self.worker.heartbeat_interval_seconds:
            raise ValueError(
                "PLACE_INGEST_MONITOR_STALE_WORKER_AFTER_SECONDS must be greater than "
                "PLACE_INGEST_WORKER_HEARTBEAT_SECONDS.",
            )
        self.validate_sharding()
        if self.checkpoint.resume_policy not in {"resume", "fresh"}:
            raise ValueError(
                "Invalid PLACE_INGEST_RESUME_POLICY: "
                f"{self.checkpoint.resume_policy!r}. Expected 'resume' or 'fresh'.",
            )

    def validate_sharding(self) -> None:
        """Raise configuration error if the shard assignment is inconsistent."""

        if self.sharding.total_workers < 1:
            raise ValueError("PLACE_INGEST_SHARD_TOTAL_WORKERS must be >= 1.")
        if not 0 <= self.sharding.worker_index < self.sharding.total_workers:
            raise ValueError(
                "PLACE_INGEST_SHARD_WORKER_INDEX must be in "
                f"[0, {self.sharding.total_workers - 1}], got {self.sharding.worker_index}.",
            )
        if self.sharding.page_size < 1:
            raise ValueError("PLACE_INGEST_SHARD_PAGE_SIZE must be >= 1.")


def _validate_redis_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"redis", "rediss", "unix"}:
        raise ValueError(
            "Invalid PLACE_INGEST_REDIS_URL: "
            f"{value!r}. Expected a redis://, rediss:// or unix:// URL.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
