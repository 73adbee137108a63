from __future__ import annotations

import hashlib
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from loginguard.logging import get_logger
from loginguard.storage.redis_cache import RedisCache


class TokenBlacklistService:
    """Blacklist of revoked access tokens with per-entry TTL.

    Entries live in Redis when a cache is configured; otherwise they are kept
    in process memory, which is only acceptable for tests and local dev.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, datetime] = {}
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @staticmethod
    def _digest(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    async def add(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        if self.cache is not None:
            await self.cache.blacklist_token(token, ttl_seconds)
        else:
            expires_at = self._now() + timedelta(seconds=ttl_seconds)
            with self._lock:
                self._entries[self._digest(token)] = expires_at
        self.logger.info("token_blacklisted", ttl_seconds=ttl_seconds)

    async def contains(self, token: str) -> bool:
        if self.cache is not None:
            return await self.cache.is_token_blacklisted(token)
        digest = self._digest(token)
        now = self._now()
        with self._lock:
            expires_at = self._entries.get(digest)
            if expires_at is None:
                return False
            if expires_at <= now:
                self._entries.pop(digest, None)
                return False
            return True

    def ttl_of(self, token: str) -> Optional[int]:
        """Remaining seconds for an in-memory entry; None when absent or Redis-backed."""
        with self._lock:
            expires_at = self._entries.get(self._digest(token))
        if expires_at is None:
            return None
        return max(0, int((expires_at - self._now()).total_seconds()))
