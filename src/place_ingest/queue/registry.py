"""Worker registry backed by the ``workers:registry`` hash."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import redis

from place_ingest.queue.keys import WORKERS_REGISTRY
from place_ingest.queue.models import WorkerInfo

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """Register, heartbeat and evict worker processes."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    def save(self, info: WorkerInfo) -> None:
        self.client.hset(WORKERS_REGISTRY, info.worker_id, info.to_json())

    def remove(self, worker_id: str) -> bool:
        return bool(self.client.hdel(WORKERS_REGISTRY, worker_id))

    def get(self, worker_id: str) -> WorkerInfo | None:
        payload = self.client.hget(WORKERS_REGISTRY, worker_id)
        if payload is None:
            return None
        return WorkerInfo.from_json(payload)

    def list_workers(self) -> dict[str, WorkerInfo]:
        """Return every parseable registry entry keyed by worker id."""

        workers: dict[str, WorkerInfo] = {}
        for worker_id, payload in self.client.hgetall(WORKERS_REGISTRY).items():
            try:
                workers[worker_id] = WorkerInfo.from_json(payload)
            except ValueError:
                logger.warning("Skipping malformed registry entry for worker %s", worker_id)
        return workers

    def evict_stale(self, *, now: datetime, threshold: timedelta) -> list[WorkerInfo]:
        """Delete entries silent for longer than ``threshold``; return what was evicted.

        Unparseable entries are deleted as well.
        """

        evicted: list[WorkerInfo] = []
        for worker_id, payload in self.client.hgetall(WORKERS_REGISTRY).items():
            try:
                info = WorkerInfo.from_json(payload)
            except ValueError:
                logger.warning("Removing malformed registry entry for worker %s", worker_id)
                self.client.hdel(WORKERS_REGISTRY, worker_id)
                continue
            if not info.is_stale(now=now, threshold=threshold):
                continue
            if self.client.hdel(WORKERS_REGISTRY, worker_id):
                evicted.append(info)
        return evicted
