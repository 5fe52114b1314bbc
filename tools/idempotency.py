import os
import time
from typing import Dict, Optional, Tuple

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError


class Idem:
    """Redis-based idempotency keys so a retried enqueue does not create a second job."""

    def __init__(self, redis_url: Optional[str] = None, clock=time.monotonic):
        self.r: Optional[redis.Redis] = None
        self._memory: Dict[str, Tuple[str, float]] = {}
        self._clock = clock
        url = redis_url if redis_url is not None else os.getenv("REDIS_URL")
        if url:
            try:
                self.r = redis.from_url(url, decode_responses=True)
            except ValueError as e:
                logger.error(f"Invalid REDIS_URL, using in-memory idempotency keys: {e}")
                self.r = None

    async def connect(self) -> bool:
        """Ping Redis once; fall back to in-memory keys when it is unreachable."""
        if self.r is None:
            logger.info("Redis not configured, idempotency keys kept in memory")
            return False
        try:
            await self.r.ping()
            logger.info("Redis connection established successfully")
            return True
        except RedisError as e:
            logger.error(f"Redis connection failed: {e}")
            # Fallback to in-memory storage (not shared between workers)
            self.r = None
            return False

    async def check_and_set(self, key: str, value: str, ttl: int = 86400) -> str:
        """
        Claim ``key`` for ``value`` unless someone already holds it.

        Args:
            key: Caller-supplied idempotency key
            value: What to store if the key is new (a job id)
            ttl: Time to live in seconds (default: 24 hours)

        Returns:
            ``value`` when the key was set, otherwise the value already stored
        """
        if not key:
            logger.warning("Empty key provided to idempotency check")
            return value

        if self.r is not None:
            try:
                if await self.r.set(f"idem:{key}", value, ex=ttl, nx=True):
                    return value
                existing = await self.r.get(f"idem:{key}")
                return existing or value
            except RedisError as e:
                logger.error(f"Idempotency check failed: {e}")
                # Fail open - allow the enqueue to continue
                return value

        now = self._clock()
        stored = self._memory.get(key)
        if stored is not None and stored[1] > now:
            return stored[0]
        self._memory[key] = (value, now + ttl)
        return value

    async def close(self) -> None:
        if self.r is not None:
            await self.r.aclose()
