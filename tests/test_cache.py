import pytest

from minerboard.cache import (
    LEADERBOARD_KEY,
    CacheEntry,
    DurableCache,
    FileStore,
    MemoryStore,
    RedisStore,
    build_store,
)
from minerboard.errors import CacheBackendError, ConfigError


class BrokenStore:
    name = "broken"

    async def get(self, key):
        raise CacheBackendError("down")

    async def set(self, key, value):
        raise CacheBackendError("down")

    async def reachable(self):
        return False

    async def close(self):
        return None


class DummyRedis:
    def __init__(self):
        self.data = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value.encode()

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_file_store_persists_across_instances(tmp_path):
    first = DurableCache(FileStore(tmp_path / "cache"))
    assert await first.save_snapshot({"miners": [], "totalHashrate": "0"}, timestamp=123.0)
    await first.save_checkpoint({"lastScannedBlock": 9, "addresses": ["0xabc"]})

    second = DurableCache(FileStore(tmp_path / "cache"))
    entry = await second.load_snapshot()
    assert entry.timestamp == 123.0
    assert entry.payload["totalHashrate"] == "0"
    assert (await second.load_checkpoint())["lastScannedBlock"] == 9
    assert not list((tmp_path / "cache").glob("*.tmp"))


@pytest.mark.asyncio
async def test_backend_errors_fall_back_to_mirror():
    cache = DurableCache(BrokenStore())
    assert await cache.load_snapshot() is None
    assert not await cache.save_snapshot({"miners": []}, timestamp=1.0)
    entry = await cache.load_snapshot()
    assert entry is not None and entry.timestamp == 1.0

    status = await cache.status()
    assert status["backend"] == "broken"
    assert status["reachable"] is False
    assert status["localCacheAvailable"] is True
    assert "down" in status["lastError"]


@pytest.mark.asyncio
async def test_works_without_backend():
    cache = DurableCache(None)
    assert not await cache.save_checkpoint({"lastScannedBlock": 1})
    assert await cache.load_checkpoint() == {"lastScannedBlock": 1}
    assert (await cache.status())["configured"] is False


@pytest.mark.asyncio
async def test_partial_key_is_separate():
    cache = DurableCache(MemoryStore())
    await cache.save_snapshot({"partial": True}, partial=True, timestamp=2.0)
    assert await cache.load_snapshot() is None
    assert (await cache.load_snapshot(partial=True)).payload == {"partial": True}


@pytest.mark.asyncio
async def test_malformed_entry_ignored():
    store = MemoryStore()
    await store.set(LEADERBOARD_KEY, "{not json")
    cache = DurableCache(store)
    assert await cache.load_snapshot() is None


@pytest.mark.asyncio
async def test_redis_store_with_client():
    client = DummyRedis()
    cache = DurableCache(RedisStore("redis://localhost:6379/0", client=client))
    await cache.save_snapshot({"miners": []}, timestamp=5.0)
    assert LEADERBOARD_KEY in client.data

    fresh = DurableCache(RedisStore("redis://localhost:6379/0", client=client))
    assert (await fresh.load_snapshot()).timestamp == 5.0
    assert (await fresh.status())["reachable"] is True
    await fresh.close()
    assert client.closed


def test_cache_entry_age():
    entry = CacheEntry(timestamp=100.0, payload={})
    assert entry.age(now=160.0) == 60.0
    assert entry.is_stale(30.0, now=160.0)
    assert not entry.is_stale(90.0, now=160.0)
    assert CacheEntry.from_json(entry.to_json()) == entry
    assert CacheEntry.from_json('{"timestamp": "x", "payload": {}}') is None


def test_build_store_urls(tmp_path):
    assert build_store(None) is None
    assert build_store("none") is None
    assert isinstance(build_store("memory://"), MemoryStore)
    store = build_store(f"file://{tmp_path}/kv")
    assert isinstance(store, FileStore)
    assert store.root == tmp_path / "kv"
    assert isinstance(build_store("redis://localhost:6379/0"), RedisStore)
    with pytest.raises(ConfigError):
        build_store("ftp://example")
