import time
from typing import Callable, Optional

from app.logging_config import get_logger

logger = get_logger("dedup_service")

DEDUP_KEY_PREFIX = "chat2act:dedup"


class RequestDeduplicator:
    """
    Absorb at-least-once redelivery of webhook events.

    A request id seen within ``ttl_seconds`` is a duplicate. The process-local
    map always applies; Redis (SET NX EX) extends the guarantee across
    instances when configured. Redis errors fall back to local-only behaviour.
    """

    def __init__(
        self,
        ttl_seconds: int = 60,
        redis_client=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.redis_client = redis_client
        self._clock = clock
        self._seen: dict[str, float] = {}

    def _purge(self, now: float) -> None:
        expired = [key for key, expires_at in self._seen.items() if expires_at <= now]
        for key in expired:
            del self._seen[key]

    async def is_duplicate(self, request_id: Optional[str]) -> bool:
        """Record ``request_id`` and report whether it was already seen."""
        if not request_id:
            return False

        now = self._clock()
        self._purge(now)
        if request_id in self._seen:
            logger.info("Duplicate request id (local)", extra={"context": {"request_id": request_id}})
            return True
        self._seen[request_id] = now + self.ttl_seconds

        if self.redis_client is not None:
            key = f"{DEDUP_KEY_PREFIX}:{request_id}"
            try:
                was_set = await self.redis_client.set(key, "1", ex=self.ttl_seconds, nx=True)
                if not was_set:
                    logger.info("Duplicate request id (redis)", extra={"context": {"request_id": request_id}})
                    return True
            except Exception as e:
                logger.warning(f"Dedup redis unavailable, using local set only: {e}")

        return False

    def __len__(self) -> int:
        self._purge(self._clock())
        return len(self._seen)
