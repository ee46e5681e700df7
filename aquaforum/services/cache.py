import json
import logging
from typing import Any, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

log = logging.getLogger("aquaforum.cache")


class JsonCache:
    """JSON values in Redis. A cache miss or a Redis outage both read as None."""

    def __init__(self, client: Optional[aioredis.Redis] = None):
        self._client = client

    @classmethod
    def from_url(cls, url: Optional[str]) -> "JsonCache":
        if not url:
            return cls(None)
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get_json(self, key: str) -> Optional[Any]:
        if self._client is None:
            return None
        try:
            raw = await self._client.get(key)
        except RedisError as exc:
            log.warning("Cache get failed for %s: %s", key, exc)
            return None
        return json.loads(raw) if raw else None

    async def set_json(self, key: str, value: Any, ttl: int = 60) -> None:
        if self._client is None:
            return
        try:
            await self._client.setex(key, ttl, json.dumps(value))
        except RedisError as exc:
            log.warning("Cache set failed for %s: %s", key, exc)

    async def invalidate_prefix(self, prefix: str) -> int:
        if self._client is None:
            return 0
        count = 0
        try:
            async for key in self._client.scan_iter(match=f"{prefix}*"):
                await self._client.delete(key)
                count += 1
        except RedisError as exc:
            log.warning("Cache invalidation failed for %s*: %s", prefix, exc)
        return count

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
