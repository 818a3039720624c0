# model/stats_cache.py
from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import orjson
import redis.asyncio as redis


class StatsCache(ABC):
    @abstractmethod
    async def get(self, event_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def put(self, event_id: str, value: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def invalidate(self, event_id: str) -> None: ...


class MemoryStatsCache(StatsCache):
    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}

    async def get(self, event_id: str) -> Optional[Dict[str, Any]]:
        return self._data.get(event_id)

    async def put(self, event_id: str, value: Dict[str, Any]) -> None:
        self._data[event_id] = value

    async def invalidate(self, event_id: str) -> None:
        self._data.pop(event_id, None)


class RedisStatsCache(StatsCache):
    def __init__(self, r: redis.Redis, ttl_seconds: int = 300) -> None:
        self.r = r
        self.ttl = ttl_seconds

    @staticmethod
    def _key(event_id: str) -> str:
        return f"event:{event_id}:stats"

    async def get(self, event_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.r.get(self._key(event_id))
        if raw is None:
            return None
        return orjson.loads(raw)

    async def put(self, event_id: str, value: Dict[str, Any]) -> None:
        await self.r.set(self._key(event_id), orjson.dumps(value),
                         ex=self.ttl)

    async def invalidate(self, event_id: str) -> None:
        await self.r.delete(self._key(event_id))


def new_cache(backend: str = "memory", *, r: Optional[redis.Redis] = None,
              ttl_seconds: int = 300) -> StatsCache:
    if backend == "redis":
        if r is None:
            raise RuntimeError("StatsCache(redis) requires r=redis.Redis")
        return RedisStatsCache(r, ttl_seconds=ttl_seconds)
    return MemoryStatsCache()
