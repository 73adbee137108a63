from loginguard.service.blacklist import TokenBlacklistService
from loginguard.storage.redis_cache import RedisCache


async def test_blacklisted_token_expires_with_ttl(blacklist, clock):
    await blacklist.add("token-a", 60)

    assert await blacklist.contains("token-a")
    assert blacklist.ttl_of("token-a") == 60

    clock.advance(seconds=60)
    assert not await blacklist.contains("token-a")


async def test_non_positive_ttl_is_not_stored(blacklist):
    await blacklist.add("token-b", 0)
    await blacklist.add("token-c", -5)

    assert not await blacklist.contains("token-b")
    assert not await blacklist.contains("token-c")
    assert blacklist.ttl_of("token-b") is None


async def test_unknown_token_is_not_blacklisted(blacklist):
    assert not await blacklist.contains("never-added")


class FakeRedisCache:
    def __init__(self):
        self.calls = []
        self.keys = set()

    async def blacklist_token(self, token, ttl_seconds):
        self.calls.append((token, ttl_seconds))
        self.keys.add(token)

    async def is_token_blacklisted(self, token):
        return token in self.keys


async def test_redis_cache_is_used_when_configured():
    cache = FakeRedisCache()
    service = TokenBlacklistService(cache)

    await service.add("token-d", 30)

    assert cache.calls == [("token-d", 30)]
    assert await service.contains("token-d")
    assert service.ttl_of("token-d") is None


def test_redis_keys_hide_raw_token():
    key = RedisCache.blacklist_key("header.payload.signature")

    assert key.startswith("auth:blacklist:")
    assert "payload" not in key
    assert len(key) == len("auth:blacklist:") + 64
