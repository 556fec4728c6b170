from redis.asyncio import Redis


class SagaLock:
    """
    Lock exclusivo por huella (SET NX) compartido entre la saga en vivo
    y el loop de recuperación: nunca avanzan el mismo registro a la vez.
    """

    def __init__(self, redis: Redis, ttl: int = 180):
        self.redis = redis
        self.ttl = ttl

    @staticmethod
    def _key(fingerprint: str) -> str:
        return f"credvault:lock:saga:{fingerprint}"

    async def acquire(self, fingerprint: str, owner: str) -> bool:
        return bool(await self.redis.set(self._key(fingerprint), owner, ex=self.ttl, nx=True))

    async def is_locked(self, fingerprint: str) -> bool:
        return bool(await self.redis.exists(self._key(fingerprint)))

    async def release(self, fingerprint: str, owner: str) -> None:
        """Libera solo si el lock sigue siendo nuestro."""
        key = self._key(fingerprint)
        if await self.redis.get(key) == owner:
            await self.redis.delete(key)
