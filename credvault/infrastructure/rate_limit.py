import logging
from typing import Tuple

from redis.asyncio import Redis

from credvault.core.exceptions import RateLimited

logger = logging.getLogger(__name__)


class RateLimiter:
    """Ventana fija sobre Redis (INCR + EXPIRE). Un bucket por identidad y tier."""

    def __init__(self, redis: Redis):
        self.redis = redis

    async def hit(self, bucket: str, rate: Tuple[int, int]) -> int:
        limit, window = rate
        key = f"credvault:rate:{bucket}"
        count = await self.redis.incr(key)
        if count == 1:
            await self.redis.expire(key, window)
        if count > limit:
            ttl = await self.redis.ttl(key)
            logger.warning(f"🚦 Presupuesto agotado para {bucket} ({count}/{limit})")
            raise RateLimited(retry_after=ttl if ttl and ttl > 0 else window)
        return count
