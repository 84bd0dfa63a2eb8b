import redis.asyncio as redis_async

_redis_client = None
_redis_url = None


def get_redis(redis_url: str, socket_timeout_seconds: float = 0.3):
    """Shared asyncio Redis client, or None when no URL is configured."""
    global _redis_client, _redis_url

    if not redis_url:
        return None

    if _redis_client is None or _redis_url != redis_url:
        _redis_url = redis_url
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )

    return _redis_client


async def close_redis() -> None:
    global _redis_client, _redis_url

    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None
    _redis_url = None
