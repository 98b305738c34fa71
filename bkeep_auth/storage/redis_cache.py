from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for the verified-token and WebAuthn challenge caches."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _token_key(token: str) -> str:
        # Raw JWTs never become Redis keys
        return "auth:token:" + hashlib.sha256(token.encode()).hexdigest()

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # verified access tokens
    async def cache_token(
        self, token: str, user_id: str, payload: dict, exp: int, ttl_seconds: int
    ) -> None:
        if ttl_seconds <= 0:
            return
        key = self._token_key(token)
        pipe = self.client.pipeline()
        pipe.set(key, json.dumps({"user": payload, "exp": exp}), ex=ttl_seconds)
        # Track per-user keys for bulk eviction
        pipe.sadd(f"auth:user_tokens:{user_id}", key)
        # Index lives as long as its longest-lived member
        pipe.expire(f"auth:user_tokens:{user_id}", ttl_seconds, nx=True)
        pipe.expire(f"auth:user_tokens:{user_id}", ttl_seconds, gt=True)
        await pipe.execute()

    async def get_cached_token(self, token: str) -> Optional[dict[str, Any]]:
        raw = await self.client.get(self._token_key(token))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    async def evict_token(self, token: str) -> None:
        await self.client.delete(self._token_key(token))

    async def evict_user_tokens(self, user_id: str) -> int:
        index_key = f"auth:user_tokens:{user_id}"
        keys = await self.client.smembers(index_key)
        if not keys:
            return 0
        pipe = self.client.pipeline()
        for key in keys:
            pipe.delete(key)
        pipe.delete(index_key)
        await pipe.execute()
        return len(keys)

    # webauthn challenges
    async def set_challenge(self, key: str, challenge: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:webauthn:{key}", challenge, ex=max(1, ttl_seconds))

    async def get_challenge(self, key: str) -> Optional[str]:
        return await self.client.get(f"auth:webauthn:{key}")

    async def delete_challenge(self, key: str) -> None:
        await self.client.delete(f"auth:webauthn:{key}")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
