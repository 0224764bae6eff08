"""Coordination store client factory."""

from __future__ import annotations

import logging

import redis

from place_ingest.config import QueueSettings, RedisSettings

logger = logging.getLogger(__name__)


def build_redis_client(settings: RedisSettings, queue: QueueSettings | None = None) -> redis.Redis:
    """Build a string-decoding Redis client whose read timeout outlasts blocking pops."""

    pop_timeout = queue.pop_timeout_seconds if queue is not None else 0
    client = redis.from_url(
        settings.url,
        decode_responses=True,
        socket_connect_timeout=settings.socket_timeout_seconds,
        socket_timeout=pop_timeout + settings.socket_timeout_seconds,
    )
    logger.debug("Redis client configured: url=%s", settings.url)
    return client
