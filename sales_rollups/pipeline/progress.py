"""
Progress Store

TTL'd key/value store for rebuild progress. The orchestrator receives a store
instance explicitly; nothing here is process-global. Progress is purely
observational, the engine never reads it back for correctness.

Implementations:
- RedisProgressStore: JSON blobs with SETEX (production)
- MemoryProgressStore: dict with expiry timestamps (single process, tests)
"""

import json
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, Union

import structlog
from redis.asyncio import ConnectionPool, Redis

from sales_rollups.config import get_settings

logger = structlog.get_logger(__name__)

Ttl = Union[int, timedelta]


class ProgressStore(Protocol):
    async def put(self, key: str, blob: Dict[str, Any], ttl: Ttl) -> None:
        ...

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...


def _seconds(ttl: Ttl) -> int:
    if isinstance(ttl, timedelta):
        return int(ttl.total_seconds())
    return int(ttl)


def _serialize(blob: Dict[str, Any]) -> str:
    return json.dumps(blob, default=str)


async def create_redis(url: Optional[str] = None) -> Redis:
    """Open a pooled Redis client and verify it answers"""
    settings = get_settings()
    pool = ConnectionPool.from_url(
        url or settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        decode_responses=settings.redis.decode_responses,
    )
    client = Redis(connection_pool=pool)

    try:
        await client.ping()
        logger.info("Redis connection established")
    except Exception as e:
        logger.error("Redis connection failed", error=str(e))
        await client.aclose()
        raise

    return client


class RedisProgressStore:
    """
    Progress blobs as JSON strings with a TTL.

    Example:
        store = RedisProgressStore(await create_redis())
        await store.put("agg_rebuild_progress_abc", {"status": "queued"}, ttl=7200)
    """

    def __init__(self, client: Redis):
        self.client = client

    async def put(self, key: str, blob: Dict[str, Any], ttl: Ttl) -> None:
        await self.client.setex(key, _seconds(ttl), _serialize(blob))

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = await self.client.get(key)
        if value is None:
            return None
        return json.loads(value)

    async def close(self) -> None:
        await self.client.aclose()
        logger.info("Redis connection closed")


class MemoryProgressStore:
    """In-process store with the same JSON and expiry semantics as Redis"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}

    async def put(self, key: str, blob: Dict[str, Any], ttl: Ttl) -> None:
        self._entries[key] = (self.clock() + _seconds(ttl), _serialize(blob))

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return json.loads(value)
