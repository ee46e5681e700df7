"""
Tag usage index: one row per lowercase tag with the number of photos carrying it.
"""

import logging
from typing import Iterable, List, Optional, Tuple

from tortoise.expressions import F

from aquaforum.models import Tag
from aquaforum.services.cache import JsonCache

log = logging.getLogger("aquaforum.tags")

MAX_TAG_LENGTH = 50
POPULAR_TTL_SECONDS = 600
CACHE_PREFIX = "tags:"


def normalize_tag(value: Optional[str]) -> str:
    """Lowercase, trimmed form used as the index key. Empty means 'not a tag'."""
    if not value:
        return ""
    tag = value.strip().lower()
    return tag if len(tag) <= MAX_TAG_LENGTH else ""


def unique_normalized(values: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for value in values:
        key = normalize_tag(value)
        if key and key not in seen:
            seen.append(key)
    return seen


def serialize_tag(tag: Tag) -> dict:
    return {"name": tag.name, "usage_count": tag.usage_count}


class TagUsageIndex:
    def __init__(self, cache: Optional[JsonCache] = None):
        self.cache = cache or JsonCache()

    async def increment(self, names: Iterable[str]) -> List[str]:
        """Upsert each distinct tag and bump its count by one, atomically per tag."""
        keys = unique_normalized(names)
        for key in keys:
            await Tag.get_or_create(name=key)
            await Tag.filter(name=key).update(usage_count=F("usage_count") + 1)
        return keys

    async def decrement(self, names: Iterable[str]) -> List[str]:
        keys = unique_normalized(names)
        for key in keys:
            # never below zero
            await Tag.filter(name=key, usage_count__gt=0).update(usage_count=F("usage_count") - 1)
        return keys

    async def get(self, name: str) -> Optional[Tag]:
        key = normalize_tag(name)
        if not key:
            return None
        return await Tag.get_or_none(name=key)

    async def list_tags(self, page: int = 1, limit: int = 50) -> Tuple[List[Tag], int]:
        page = max(1, page)
        total = await Tag.all().count()
        tags = await Tag.all().order_by("-usage_count", "name").offset((page - 1) * limit).limit(limit)
        return tags, total

    async def popular(self, limit: int = 10) -> List[dict]:
        cache_key = f"{CACHE_PREFIX}popular:{limit}"
        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            return cached
        tags = await Tag.filter(usage_count__gt=0).order_by("-usage_count", "name").limit(limit)
        data = [serialize_tag(t) for t in tags]
        await self.cache.set_json(cache_key, data, ttl=POPULAR_TTL_SECONDS)
        return data

    async def suggestions(self, query: Optional[str], limit: int = 5) -> List[Tag]:
        if not query or len(query.strip()) < 2:
            return []
        return await Tag.filter(name__icontains=query.strip().lower()).order_by("-usage_count", "name").limit(limit)

    async def delete(self, name: str) -> bool:
        """Remove the index row. Callers detach the tag from photos first."""
        key = normalize_tag(name)
        deleted = await Tag.filter(name=key).delete() if key else 0
        if deleted:
            await self.cache.invalidate_prefix(CACHE_PREFIX)
            log.info("Deleted tag %s", key)
        return bool(deleted)
