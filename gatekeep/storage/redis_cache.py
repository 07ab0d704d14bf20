from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from gatekeep.logging import get_logger
from gatekeep.storage.errors import StoreUnavailableError

logger = get_logger(__name__)


class RedisKeyValueStore:
    """Shared KV store for OTPs, verification windows and attempt counters.

    All compound operations run as a single Redis command or Lua script so
    they stay atomic across processes.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Counter TTL is applied on creation only, giving a fixed window from the
    # first increment. A counter that somehow lost its TTL gets one again.
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 or redis.call('TTL', KEYS[1]) == -1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before relying on it."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as exc:
            raise self._unavailable("get", key, exc) from exc

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        try:
            await self.client.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise self._unavailable("set_with_ttl", key, exc) from exc

    async def get_and_delete(self, key: str) -> Optional[str]:
        """Atomically read and remove ``key`` so a value is observed at most once."""
        try:
            return await self.client.getdel(key)
        except RedisError as exc:
            raise self._unavailable("get_and_delete", key, exc) from exc

    async def increment_with_ttl(self, key: str, ttl_seconds: int) -> int:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        try:
            result = await self.client.eval(self._INCREMENT_SCRIPT, 1, key, ttl_seconds)
        except RedisError as exc:
            raise self._unavailable("increment_with_ttl", key, exc) from exc
        return int(result)

    async def ttl(self, key: str) -> Optional[int]:
        try:
            remaining = await self.client.ttl(key)
        except RedisError as exc:
            raise self._unavailable("ttl", key, exc) from exc
        # -2: missing key, -1: key without expiry
        if remaining is None or remaining == -2:
            return None
        if remaining < 0:
            return None
        return max(1, int(remaining))

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            raise self._unavailable("delete", key, exc) from exc

    async def sweep_expired(self) -> int:
        # Redis expires keys natively
        return 0

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down the runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()

    @staticmethod
    def _unavailable(operation: str, key: str, exc: Exception) -> StoreUnavailableError:
        prefix = key.split(":", 1)[0]
        logger.error("kv_operation_failed", operation=operation, key_prefix=prefix, error=str(exc))
        return StoreUnavailableError(f"redis {operation} failed")
