from __future__ import annotations

import hashlib
import secrets
from typing import Optional

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for short-lived cross-process locks."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Delete only if the caller still owns the lock
    _RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release = self.client.register_script(self._RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def lock_key(*parts: str) -> str:
        digest = hashlib.sha256(":".join(parts).encode()).hexdigest()
        return f"stepauth:lock:{digest}"

    async def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        """Try to take ``key``; returns an owner token or None if already held."""
        token = secrets.token_hex(16)
        acquired = await self.client.set(key, token, nx=True, ex=max(1, ttl_seconds))
        return token if acquired else None

    async def release_lock(self, key: str, token: str) -> bool:
        released = await self._release(keys=[key], args=[token])
        return bool(released)

    async def close(self) -> None:
        await self.client.aclose()
