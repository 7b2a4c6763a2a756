"""
Unit Tests - Progress Stores
"""
import json
from datetime import timedelta
from unittest.mock import AsyncMock

from sales_rollups.pipeline.progress import MemoryProgressStore, RedisProgressStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestMemoryProgressStore:
    """Tests for the in-process progress store"""

    async def test_put_and_get(self):
        """Test blobs round-trip as JSON"""
        store = MemoryProgressStore()

        await store.put("agg_rebuild_progress_1", {"status": "queued", "units_total": 0}, ttl=60)

        assert await store.get("agg_rebuild_progress_1") == {"status": "queued", "units_total": 0}

    async def test_entries_expire(self):
        """Test blobs disappear after their TTL"""
        clock = FakeClock()
        store = MemoryProgressStore(clock=clock)
        await store.put("key", {"status": "processing"}, ttl=timedelta(hours=2))

        clock.now += 7199
        assert await store.get("key") is not None
        clock.now += 1
        assert await store.get("key") is None

    async def test_missing_key(self):
        """Test unknown keys return None"""
        assert await MemoryProgressStore().get("nope") is None


class TestRedisProgressStore:
    """Tests for the Redis-backed progress store"""

    async def test_put_uses_setex(self):
        """Test blobs are written with SETEX and the TTL in seconds"""
        client = AsyncMock()
        store = RedisProgressStore(client)

        await store.put("agg_rebuild_progress_1", {"status": "queued"}, ttl=7200)

        client.setex.assert_awaited_once_with(
            "agg_rebuild_progress_1", 7200, json.dumps({"status": "queued"})
        )

    async def test_get_decodes_json(self):
        """Test stored JSON is decoded and missing keys return None"""
        client = AsyncMock()
        client.get.side_effect = [json.dumps({"status": "completed"}), None]
        store = RedisProgressStore(client)

        assert await store.get("a") == {"status": "completed"}
        assert await store.get("b") is None

    async def test_close(self):
        """Test closing releases the client"""
        client = AsyncMock()

        await RedisProgressStore(client).close()

        client.aclose.assert_awaited_once()
