"""Enqueue operations for place update tasks."""

from __future__ import annotations

import logging
from collections.abc import Iterable

import redis

from place_ingest.places.repository import PlaceRepository
from place_ingest.queue.keys import PENDING_QUEUE, PRIORITY_QUEUE, STAT_TOTAL_PUSHED, STATS_HASH
from place_ingest.queue.models import HIGH_PRIORITY, NORMAL_PRIORITY, TaskFlags, UpdateTask

logger = logging.getLogger(__name__)

PUSH_ALL_CHUNK_SIZE = 100


class QueueProducer:
    """Push update tasks onto the pending or priority queue."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    def push_task(self, task: UpdateTask) -> str:
        """Enqueue an already-built task and return its id."""

        queue = PRIORITY_QUEUE if task.priority >= HIGH_PRIORITY else PENDING_QUEUE
        self.client.lpush(queue, task.to_json())
        self.client.hincrby(STATS_HASH, STAT_TOTAL_PUSHED, 1)
        logger.debug("Task %s for place %s pushed to %s", task.task_id, task.place_id, queue)
        return task.task_id

    def push(
        self,
        place_id: int,
        flags: TaskFlags | None = None,
        *,
        priority: bool = False,
        task_id: str | None = None,
    ) -> str:
        task = UpdateTask.create(
            place_id,
            flags,
            priority=HIGH_PRIORITY if priority else NORMAL_PRIORITY,
            task_id=task_id,
        )
        task_id = self.push_task(task)
        logger.info(
            "Task pushed: task_id=%s place_id=%s priority=%s",
            task_id,
            place_id,
            task.priority,
        )
        return task_id

    def push_batch(self, place_ids: Iterable[int], flags: TaskFlags | None = None) -> int:
        """Enqueue one normal-priority task per place id with a single list push."""

        payloads = [UpdateTask.create(place_id, flags).to_json() for place_id in place_ids]
        if not payloads:
            return 0
        self.client.lpush(PENDING_QUEUE, *payloads)
        self.client.hincrby(STATS_HASH, STAT_TOTAL_PUSHED, len(payloads))
        logger.info("Batch pushed: %s tasks", len(payloads))
        return len(payloads)

    def push_all_pending(
        self,
        places: PlaceRepository,
        flags: TaskFlags | None = None,
        *,
        chunk_size: int = PUSH_ALL_CHUNK_SIZE,
    ) -> int:
        """Enqueue every place whose crawl status is pending."""

        place_ids = places.list_pending_place_ids()
        total = 0
        for start in range(0, len(place_ids), chunk_size):
            total += self.push_batch(place_ids[start : start + chunk_size], flags)
        logger.info("Pushed all pending places: %s tasks", total)
        return total

    def pending_count(self) -> int:
        return int(self.client.llen(PENDING_QUEUE))

    def priority_count(self) -> int:
        return int(self.client.llen(PRIORITY_QUEUE))

    def clear_queues(self) -> None:
        """Drop every task still waiting in the pending and priority queues."""

        self.client.delete(PENDING_QUEUE, PRIORITY_QUEUE)
        logger.warning("Pending and priority queues cleared")
