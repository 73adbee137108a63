from __future__ import annotations

import hashlib

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the access-token blacklist."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def blacklist_key(token: str) -> str:
        # Raw tokens never become Redis keys
        digest = hashlib.sha256(token.encode()).hexdigest()
        return f"auth:blacklist:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived synchronous client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def blacklist_token(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(self.blacklist_key(token), "1", ex=ttl_seconds)

    async def is_token_blacklisted(self, token: str) -> bool:
        return bool(await self.client.exists(self.blacklist_key(token)))

    async def close(self) -> None:
        await self.client.aclose()
