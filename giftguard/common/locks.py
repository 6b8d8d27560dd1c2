# giftguard/common/locks.py
"""Single-flight locks for batch jobs that must not overlap.

Cluster analysis and the learning loop can double-create rows when two runs
cover the same window, so each run holds a Redis lock for its duration.
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
import logging

import redis.asyncio as redis
from redis.exceptions import LockError

from giftguard.common.errors import JobAlreadyRunningError

logger = logging.getLogger(__name__)

LOCK_PREFIX = "giftguard:jobs:"


@asynccontextmanager
async def single_flight(
    redis_client: Optional[redis.Redis],
    job_name: str,
    ttl_seconds: int,
) -> AsyncGenerator[None, None]:
    # Without Redis (tests, one-off scripts) there is nothing to coordinate with.
    if redis_client is None:
        yield
        return

    lock = redis_client.lock(f"{LOCK_PREFIX}{job_name}", timeout=ttl_seconds)
    acquired = await lock.acquire(blocking=False)
    if not acquired:
        logger.info(f"Job {job_name} already running elsewhere, skipping")
        raise JobAlreadyRunningError(job_name)

    try:
        yield
    finally:
        try:
            await lock.release()
        except LockError:
            # TTL elapsed before the job finished; another run may already hold it.
            logger.warning(f"Lock for job {job_name} expired before release")
