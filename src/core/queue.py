"""Redis/RQ queue wiring for worker-backed research runs."""

from __future__ import annotations

import redis
from rq import Queue

from src.core.settings import get_settings


def get_redis_connection() -> redis.Redis:
    """Create a Redis connection using `REDIS_URL` from settings."""
    url = get_settings().REDIS_URL
    if not url:
        raise RuntimeError("REDIS_URL is not configured")
    return redis.from_url(url)


def get_research_queue() -> Queue:
    """Return the RQ Queue that research workers consume."""
    return Queue(get_settings().RQ_QUEUE_NAME, connection=get_redis_connection())
