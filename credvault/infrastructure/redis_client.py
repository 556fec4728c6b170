import redis.asyncio as redis


def build_redis(url: str) -> redis.Redis:
    """Cliente con pool propio y timeouts cortos para no bloquear el event loop."""
    pool = redis.ConnectionPool.from_url(
        url,
        decode_responses=True,
        max_connections=20,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        retry_on_timeout=True,
    )
    return redis.Redis(connection_pool=pool)
