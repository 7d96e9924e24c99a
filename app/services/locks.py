"""
HealthBridge Core - Distributed Locks
Redis locks that keep a single change-feed pull running per checkpoint
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import redis
from redis import RedisError
from redis.exceptions import LockError

from app.config import settings

logger = logging.getLogger(__name__)


def lock_key(name: str) -> str:
    return f"{settings.events_redis_channel_prefix}:lock:{name}"


@contextmanager
def single_flight(name: str, timeout: Optional[int] = None, redis_url: Optional[str] = None) -> Iterator[bool]:
    """
    Hold a non-blocking Redis lock for the duration of the block

    Yields True when the lock was taken and False when another holder has
    it. Without Redis the block runs unguarded (yields True); the checkpoint
    compare-and-advance still rejects a stale page.

    Args:
        name: Lock name, usually the checkpoint name
        timeout: Seconds before Redis expires a lock whose holder died
        redis_url: Redis URL (default: settings.redis_url)
    """
    lock = None
    try:
        client = redis.from_url(redis_url or settings.redis_url, socket_connect_timeout=5, socket_timeout=5)
        lock = client.lock(lock_key(name), timeout=timeout or settings.task_time_limit)
        acquired = lock.acquire(blocking=False)
    except RedisError as e:
        logger.warning(f"Redis lock '{name}' unavailable ({e}); running without single-flight guard")
        lock = None
        acquired = True

    if not acquired:
        logger.info(f"Lock '{name}' is held by another worker")

    try:
        yield acquired
    finally:
        if lock is not None and acquired:
            try:
                lock.release()
            except LockError as e:
                logger.warning(f"Lock '{name}' expired before release: {e}")
