from uuid import uuid4

from app.logging_config import get_logger

logger = get_logger("lock_service")

LOCK_KEY_PREFIX = "chat2act:lock"


def conversation_key(tenant_id: str, visitor_id: str) -> str:
    return f"{tenant_id}:{visitor_id}"


class ConversationLock:
    """
    At most one in-flight pipeline per (tenant, visitor).

    Acquisition never waits: a held lock means the caller answers with a
    contention notice instead of queueing. The local set guards this process;
    Redis (SET NX EX with an owner token) guards across instances when
    configured. ``ttl_seconds`` bounds how long a crashed owner can block a
    conversation in Redis.
    """

    def __init__(self, ttl_seconds: int = 600, redis_client=None):
        self.ttl_seconds = ttl_seconds
        self.redis_client = redis_client
        self._held: dict[str, str | None] = {}

    def is_held(self, tenant_id: str, visitor_id: str) -> bool:
        return conversation_key(tenant_id, visitor_id) in self._held

    async def acquire(self, tenant_id: str, visitor_id: str) -> bool:
        if self.is_held(tenant_id, visitor_id):
            return False
        key = conversation_key(tenant_id, visitor_id)
        # Reserve locally before the first await so concurrent acquirers in this process lose.
        self._held[key] = None

        if self.redis_client is not None:
            token = uuid4().hex
            try:
                was_set = await self.redis_client.set(
                    f"{LOCK_KEY_PREFIX}:{key}", token, ex=self.ttl_seconds, nx=True
                )
            except Exception as e:
                logger.warning(f"Lock redis unavailable, using local lock only: {e}")
            else:
                if not was_set:
                    del self._held[key]
                    return False
                self._held[key] = token

        logger.debug("Lock acquired", extra={"context": {"conversation": key}})
        return True

    async def release(self, tenant_id: str, visitor_id: str) -> None:
        key = conversation_key(tenant_id, visitor_id)
        if key not in self._held:
            logger.warning("Release of a lock that is not held", extra={"context": {"conversation": key}})
            return
        token = self._held.pop(key)

        if token and self.redis_client is not None:
            redis_key = f"{LOCK_KEY_PREFIX}:{key}"
            try:
                current = await self.redis_client.get(redis_key)
                if current == token:
                    await self.redis_client.delete(redis_key)
            except Exception as e:
                logger.warning(f"Lock redis release failed, key will expire: {e}")

        logger.debug("Lock released", extra={"context": {"conversation": key}})
