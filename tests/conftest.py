"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import fakeredis
import pytest

from place_ingest.checkpoint.manager import CheckpointManager
from place_ingest.checkpoint.repository import CheckpointRepository
from place_ingest.config import QueueSettings
from place_ingest.places.repository import PlaceRepository


class ManualClock:
    """Deterministic clock for time-dependent queue logic."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def redis_client() -> Iterator[fakeredis.FakeRedis]:
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture()
def fast_queue_settings() -> QueueSettings:
    return QueueSettings(
        max_attempts=3,
        backoff_multiplier_seconds=0,
        pop_timeout_seconds=1,
        error_backoff_seconds=0.05,
        deferred_poll_seconds=0.05,
    )


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "place_ingest.db"


@pytest.fixture()
def place_repository(db_path: Path) -> Iterator[PlaceRepository]:
    repository = PlaceRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def checkpoint_repository(db_path: Path) -> Iterator[CheckpointRepository]:
    repository = CheckpointRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def checkpoint_manager(checkpoint_repository: CheckpointRepository) -> CheckpointManager:
    return CheckpointManager(checkpoint_repository)


@pytest.fixture()
def manual_clock() -> ManualClock:
    return ManualClock()
