import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from warden.storage.errors import StoreUnavailable
from warden.storage.redis_cache import SyncRedisCache, principal_key, token_key


class FakeRedis:
    """In-memory stand-in for the synchronous redis client."""

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.closed = False

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        return True

    def get(self, key):
        return self.values.get(key)

    def exists(self, key):
        return int(key in self.values)

    def delete(self, key):
        self.values.pop(key, None)
        self.ttls.pop(key, None)

    def pipeline(self):
        return FakePipeline(self)

    def ping(self):
        return True

    def close(self):
        self.closed = True


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.queued = []

    def set(self, key, value, ex=None):
        self.queued.append((key, value, ex))

    def execute(self):
        for key, value, ex in self.queued:
            self.client.set(key, value, ex=ex)


class DownRedis:
    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise RedisConnectionError("Connection refused")

        return _fail


def test_key_layout():
    assert token_key("abc") == "blacklist:token:abc"
    assert principal_key("p-1") == "blacklist:user:p-1"


async def test_token_entries_carry_ttl():
    client = FakeRedis()
    cache = SyncRedisCache(client=client)
    await cache.set_token_revoked("jti-1", 120)
    assert client.ttls[token_key("jti-1")] == 120
    assert await cache.is_token_revoked("jti-1") is True
    await cache.clear_token_revoked("jti-1")
    assert await cache.is_token_revoked("jti-1") is False


async def test_claim_sets_entry_only_once():
    client = FakeRedis()
    cache = SyncRedisCache(client=client)
    assert await cache.claim_token_revoked("jti-1", 90) is True
    assert await cache.claim_token_revoked("jti-1", 90) is False
    assert client.ttls[token_key("jti-1")] == 90
    assert await cache.is_token_revoked("jti-1") is True


async def test_bulk_revocation_uses_pipeline():
    client = FakeRedis()
    cache = SyncRedisCache(client=client)
    await cache.set_tokens_revoked(["a", "b"], 60)
    assert set(client.values) == {token_key("a"), token_key("b")}


async def test_principal_cutoff_round_trip():
    client = FakeRedis()
    cache = SyncRedisCache(client=client)
    assert await cache.get_principal_revoked_at("p-1") is None
    await cache.set_principal_revoked_at("p-1", 1_700_000_000_123, 600)
    assert client.values[principal_key("p-1")] == "1700000000123"
    assert await cache.get_principal_revoked_at("p-1") == 1_700_000_000_123


async def test_corrupt_cutoff_revokes_everything():
    client = FakeRedis()
    client.values[principal_key("p-1")] = "not-a-number"
    cache = SyncRedisCache(client=client)
    assert await cache.get_principal_revoked_at("p-1") == 2**63 - 1


@pytest.mark.parametrize(
    "call",
    [
        lambda c: c.set_token_revoked("jti", 60),
        lambda c: c.set_tokens_revoked(["jti"], 60),
        lambda c: c.is_token_revoked("jti"),
        lambda c: c.get_principal_revoked_at("p-1"),
        lambda c: c.set_principal_revoked_at("p-1", 1, 60),
        lambda c: c.clear_principal_revoked_at("p-1"),
        lambda c: c.claim_token_revoked("jti", 60),
    ],
)
async def test_redis_errors_surface_as_store_unavailable(call):
    cache = SyncRedisCache(client=DownRedis())
    with pytest.raises(StoreUnavailable) as excinfo:
        await call(cache)
    assert excinfo.value.backend == "redis"


async def test_close_closes_client():
    client = FakeRedis()
    cache = SyncRedisCache(client=client)
    await cache.close()
    assert client.closed
