"""
Per-Session Rate Limiter (Redis)

Fixed-window counter shared by every API process and worker:
INCR the window key, set its TTL on first hit, reject past the limit.
"""

from typing import Optional

from roomview.core.config import settings
from roomview.core.exceptions import RateLimitedError
from roomview.core.logging import get_logger

logger = get_logger(__name__)


class SessionRateLimiter:
    """Limits render submissions per room session."""

    def __init__(
        self,
        redis_client,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        prefix: str = "roomview:ratelimit"
    ):
        self.redis = redis_client
        self.max_requests = max_requests or settings.RATE_LIMIT_MAX_REQUESTS
        self.window_seconds = window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS
        self.prefix = prefix

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}:{session_id}"

    async def hit(self, session_id: str):
        """Count one request; raise RateLimitedError once over the limit."""
        key = self._key(session_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.ttl(key)
            count, ttl = await pipe.execute()

        # Key without expiry: first hit in the window, or a lost EXPIRE
        if ttl < 0:
            await self.redis.expire(key, self.window_seconds)
            ttl = self.window_seconds

        if count > self.max_requests:
            logger.info(
                "rate_limited",
                session_id=session_id,
                count=count,
                limit=self.max_requests,
                retry_after=ttl
            )
            raise RateLimitedError(retry_after=max(1, ttl))

    async def reset(self, session_id: str):
        await self.redis.delete(self._key(session_id))
