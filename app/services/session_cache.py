import json
from datetime import datetime, timezone
from typing import Any, Optional

from app.config import settings
from app.logging_config import get_logger
from app.services.redis_client import get_redis

logger = get_logger("session_cache")

SESSION_KEY_PREFIX = "chat2act:session"
KNOWN_KEY_PREFIX = "chat2act:known"
TEMP_SESSION_KEY_PREFIX = "chat2act:temp_session"

# Platform fields that pollute visitor custom parameters.
DROPPED_SESSION_FIELDS = ("type", "platform")


class SessionCache:
    """
    TTL-bounded projection of per-visitor facts in Redis.

    Advisory only: every method logs and swallows Redis errors, returning
    ``None``/``False`` so callers fall back to the durable conversation row.
    Without a client every read misses and every write is a no-op.
    """

    def __init__(self, redis_client=None, ttl_seconds: int = 86400, temp_ttl_seconds: int = 300):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.temp_ttl_seconds = temp_ttl_seconds

    @staticmethod
    def session_key(tenant_id: str, visitor_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}:{tenant_id}:{visitor_id}"

    @staticmethod
    def known_key(tenant_id: str, visitor_id: str) -> str:
        return f"{KNOWN_KEY_PREFIX}:{tenant_id}:{visitor_id}"

    async def _get_json(self, key: str) -> Optional[dict]:
        if self.redis_client is None:
            return None
        try:
            value = await self.redis_client.get(key)
        except Exception as e:
            logger.warning(f"Session cache read failed: {e}", extra={"context": {"key": key}})
            return None
        if not value:
            return None
        try:
            data = json.loads(value)
        except Exception as e:
            logger.warning(f"Session cache decode failed: {e}", extra={"context": {"key": key}})
            return None
        return data if isinstance(data, dict) else None

    async def _set_json(self, key: str, data: dict, ttl_seconds: int) -> bool:
        if self.redis_client is None:
            return False
        try:
            await self.redis_client.set(key, json.dumps(data, ensure_ascii=False, default=str), ex=ttl_seconds)
            return True
        except Exception as e:
            logger.warning(f"Session cache write failed: {e}", extra={"context": {"key": key}})
            return False

    async def store_session(
        self,
        tenant_id: str,
        visitor_id: str,
        params: dict[str, Any],
        chat_id: Optional[str] = None,
    ) -> bool:
        now = datetime.now(timezone.utc)
        data = {
            **params,
            "tenantId": tenant_id,
            "chatId": chat_id,
            "lastUpdated": now.isoformat(),
        }
        stored = await self._set_json(self.session_key(tenant_id, visitor_id), data, self.ttl_seconds)
        if stored:
            logger.info(
                "Stored visitor session",
                extra={"context": {"tenant_id": tenant_id, "visitor_id": visitor_id, "keys": sorted(params)}},
            )
        return stored

    async def get_session(self, tenant_id: str, visitor_id: str) -> Optional[dict]:
        return await self._get_json(self.session_key(tenant_id, visitor_id))

    async def get_resolved_parameters(self, tenant_id: str, visitor_id: str) -> Optional[dict[str, str]]:
        return await self._get_json(self.known_key(tenant_id, visitor_id))

    async def set_resolved_parameters(self, tenant_id: str, visitor_id: str, values: dict[str, str]) -> bool:
        return await self._set_json(self.known_key(tenant_id, visitor_id), dict(values), self.ttl_seconds)

    async def set_resolved_parameter(self, tenant_id: str, visitor_id: str, name: str, value: str) -> bool:
        current = await self.get_resolved_parameters(tenant_id, visitor_id) or {}
        current[name] = value
        return await self.set_resolved_parameters(tenant_id, visitor_id, current)

    async def store_temp_params(self, email: str, params: dict[str, Any]) -> bool:
        """Park params sent before the visitor opened the chat; picked up by the next trigger."""
        return await self._set_json(f"{TEMP_SESSION_KEY_PREFIX}:{email}", params, self.temp_ttl_seconds)

    async def get_temp_params(self, email: Optional[str]) -> dict:
        if not email:
            return {}
        # Not deleted on read: the visitor may open several chats within the TTL.
        return await self._get_json(f"{TEMP_SESSION_KEY_PREFIX}:{email}") or {}


def build_session_params(
    temp_params: dict[str, Any],
    custom_info: Optional[dict[str, Any]],
    info: Optional[dict[str, Any]],
    session_variables: Optional[dict[str, Any]],
    tenant_id: str,
) -> dict[str, Any]:
    """Merge visitor-supplied parameters. Later sources win, directly-posted params win over all."""
    params: dict[str, Any] = {
        **(session_variables or {}),
        **(info or {}),
        **(custom_info or {}),
        **(temp_params or {}),
        "orgId": tenant_id,
    }
    for field in DROPPED_SESSION_FIELDS:
        params.pop(field, None)
    return params


_session_cache: Optional[SessionCache] = None


def get_session_cache() -> SessionCache:
    global _session_cache
    if _session_cache is None:
        _session_cache = SessionCache(
            redis_client=get_redis(),
            ttl_seconds=settings.session_ttl_seconds,
            temp_ttl_seconds=settings.temp_session_ttl_seconds,
        )
    return _session_cache
