"""Unit tests for LocalCache."""

import json

import pytest

from marketchat.services.local_cache import LocalCache


class TestLocalCache:
    """Tests for LocalCache."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, redis):
        cache = LocalCache(redis, " Asha.Buyer@Example.com", ttl=60, prefix="test")

        await cache.save({"conversations": {"conversations": [], "aliases": {}}})
        data = await cache.load()

        assert cache.key == "test:snapshot:asha.buyer@example.com"
        assert data["conversations"] == {"conversations": [], "aliases": {}}
        assert "savedAt" in data
        assert redis.ttls[cache.key] == 60

    @pytest.mark.asyncio
    async def test_load_missing(self, redis):
        assert await LocalCache(redis, "nobody@example.com").load() is None

    @pytest.mark.asyncio
    async def test_unreadable_snapshot_is_discarded(self, redis):
        cache = LocalCache(redis, "asha.buyer@example.com")
        redis.data[cache.key] = "{not json"

        assert await cache.load() is None
        assert cache.key not in redis.data

    @pytest.mark.asyncio
    async def test_clear(self, redis):
        cache = LocalCache(redis, "asha.buyer@example.com")
        await cache.save({})

        await cache.clear()

        assert await cache.load() is None

    @pytest.mark.asyncio
    async def test_snapshot_is_json(self, redis):
        cache = LocalCache(redis, "asha.buyer@example.com")

        await cache.save({"pending": [{"kind": "append_message"}]})

        assert json.loads(redis.data[cache.key])["pending"] == [{"kind": "append_message"}]
