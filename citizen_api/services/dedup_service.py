from __future__ import annotations

import time
from typing import Callable, Optional

from citizen_api.logging_config import get_logger

logger = get_logger("dedup_service")

_LOCAL_PURGE_THRESHOLD = 10000


class MessageDeduplicator:
    """Claims provider message ids so retried webhook deliveries are processed once.

    Redis ``SET NX EX`` is the primary record. When Redis is not configured or is
    unreachable, a process-local TTL map takes over.
    """

    def __init__(
        self,
        redis_client=None,
        ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.redis = redis_client
        self.ttl_seconds = max(int(ttl_seconds), 1)
        self.clock = clock
        self._local: dict[str, float] = {}

    @staticmethod
    def build_key(channel_id: str, message_id: str) -> str:
        return f"citizen:dedup:{channel_id}:{message_id}"

    def _purge_local(self, now: float) -> None:
        expired = [key for key, expires_at in self._local.items() if expires_at <= now]
        for key in expired:
            del self._local[key]

    def _claim_local(self, key: str) -> bool:
        now = self.clock()
        if len(self._local) >= _LOCAL_PURGE_THRESHOLD:
            self._purge_local(now)
        expires_at = self._local.get(key)
        if expires_at is not None and expires_at > now:
            return False
        self._local[key] = now + self.ttl_seconds
        return True

    async def claim(self, channel_id: str, message_id: Optional[str]) -> bool:
        """Return True if this delivery is new and should be processed."""
        if not message_id:
            return True

        key = self.build_key(channel_id, message_id)
        if self.redis is not None:
            try:
                was_set = await self.redis.set(key, "1", ex=self.ttl_seconds, nx=True)
                if not was_set:
                    logger.info(
                        "Duplicate message_id",
                        extra={"context": {"channel_id": channel_id, "message_id": message_id}},
                    )
                return bool(was_set)
            except Exception as e:
                logger.warning(f"Dedup redis unavailable, falling back to local cache: {e}")

        claimed = self._claim_local(key)
        if not claimed:
            logger.info(
                "Duplicate message_id (local)",
                extra={"context": {"channel_id": channel_id, "message_id": message_id}},
            )
        return claimed

    async def release(self, channel_id: str, message_id: Optional[str]) -> None:
        """Forget a claim so a provider redelivery is processed again."""
        if not message_id:
            return
        key = self.build_key(channel_id, message_id)
        self._local.pop(key, None)
        if self.redis is not None:
            try:
                await self.redis.delete(key)
            except Exception as e:
                logger.warning(f"Failed to release dedup key {key}: {e}")
