"""
Photo record store.

Tag merges go through the unique (photo, key) constraint on PhotoTag, so a
merge is a series of inserts the database de-duplicates rather than a
read-modify-write of a tag list held in memory.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from tortoise.exceptions import IntegrityError
from tortoise.expressions import F

from aquaforum.models import Photo, PhotoLike, PhotoTag, VisionStatus
from aquaforum.services.media import MediaService
from aquaforum.services.results import DeleteResult
from aquaforum.services.tag_index import TagUsageIndex, normalize_tag

log = logging.getLogger("aquaforum.photos")

NO_TAGS_NOTE = "No tags generated"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PhotoStore:
    def __init__(self, tag_index: TagUsageIndex):
        self.tag_index = tag_index

    async def create(self, *, tags: Iterable[str] = (), **fields) -> Photo:
        photo = await Photo.create(vision_status=VisionStatus.PENDING, **fields)
        await self.merge_tags(photo.id, tags)
        return photo

    async def get(self, photo_id) -> Optional[Photo]:
        return await Photo.get_or_none(id=photo_id)

    async def exists(self, photo_id) -> bool:
        return await Photo.filter(id=photo_id).exists()

    async def mark_processing(self, photo_id) -> bool:
        updated = await Photo.filter(id=photo_id).update(
            vision_status=VisionStatus.PROCESSING,
            vision_started_at=utcnow(),
            vision_completed_at=None,
            vision_error=None,
        )
        return updated > 0

    async def mark_completed(
        self,
        photo_id,
        *,
        model: Optional[str],
        processing_ms: Optional[int],
        vision_tags: List[Dict[str, Any]],
        note: Optional[str] = None,
    ) -> bool:
        updated = await Photo.filter(id=photo_id).update(
            vision_status=VisionStatus.COMPLETED,
            vision_completed_at=utcnow(),
            vision_model=model,
            vision_processing_ms=processing_ms,
            vision_tags=vision_tags,
            vision_error=note,
        )
        return updated > 0

    async def mark_failed(self, photo_id, error: str) -> bool:
        updated = await Photo.filter(id=photo_id).update(
            vision_status=VisionStatus.FAILED,
            vision_completed_at=utcnow(),
            vision_error=error or "Unknown error",
        )
        return updated > 0

    async def merge_tags(self, photo_id, names: Iterable[str]) -> List[str]:
        """
        Set-union ``names`` into the photo's tags.

        Display casing of an existing tag is kept. Returns the normalized keys
        that were newly attached; only those are counted in the usage index.
        """
        added: List[str] = []
        position = await PhotoTag.filter(photo_id=photo_id).count()
        for name in names:
            key = normalize_tag(name)
            if not key:
                continue
            try:
                _, created = await PhotoTag.get_or_create(
                    photo_id=photo_id,
                    key=key,
                    defaults={"name": name.strip(), "position": position},
                )
            except IntegrityError:
                # lost a race with a concurrent insert of the same key
                created = False
            if created:
                added.append(key)
                position += 1
        if added:
            await self.tag_index.increment(added)
        return added

    async def set_tags(self, photo_id, names: Iterable[str]) -> List[str]:
        """Replace the photo's tags, keeping index counts in step."""
        names = [n for n in names if normalize_tag(n)]
        wanted = {normalize_tag(n) for n in names}
        current = await PhotoTag.filter(photo_id=photo_id).values_list("key", flat=True)
        removed = [k for k in current if k not in wanted]
        if removed:
            await PhotoTag.filter(photo_id=photo_id, key__in=removed).delete()
            await self.tag_index.decrement(removed)
        await self.merge_tags(photo_id, names)
        order = []
        for name in names:
            key = normalize_tag(name)
            if key not in order:
                order.append(key)
        for position, key in enumerate(order):
            await PhotoTag.filter(photo_id=photo_id, key=key).update(position=position)
        return await self.tag_names(photo_id)

    async def tag_names(self, photo_id) -> List[str]:
        return await PhotoTag.filter(photo_id=photo_id).order_by("position", "created_at").values_list("name", flat=True)

    async def tags_by_photo(self, photo_ids: List) -> Dict[str, List[str]]:
        rows = await PhotoTag.filter(photo_id__in=photo_ids).order_by("position", "created_at").values("photo_id", "name")
        grouped: Dict[str, List[str]] = {str(pid): [] for pid in photo_ids}
        for row in rows:
            grouped.setdefault(str(row["photo_id"]), []).append(row["name"])
        return grouped

    async def increment_views(self, photo_id) -> None:
        await Photo.filter(id=photo_id).update(views=F("views") + 1)

    async def toggle_like(self, photo_id, user_id: str) -> Tuple[bool, int]:
        """Like if not liked yet, otherwise unlike. Returns (liked, likes_count)."""
        deleted = await PhotoLike.filter(photo_id=photo_id, user_id=user_id).delete()
        if deleted:
            await Photo.filter(id=photo_id, likes_count__gt=0).update(likes_count=F("likes_count") - 1)
            liked = False
        else:
            try:
                await PhotoLike.create(photo_id=photo_id, user_id=user_id)
                await Photo.filter(id=photo_id).update(likes_count=F("likes_count") + 1)
            except IntegrityError:
                # a concurrent request already recorded this like
                pass
            liked = True
        photo = await Photo.get_or_none(id=photo_id)
        return liked, photo.likes_count if photo else 0

    async def remove_tag_everywhere(self, name: str) -> int:
        key = normalize_tag(name)
        if not key:
            return 0
        return await PhotoTag.filter(key=key).delete()

    async def delete(self, photo: Photo, media: MediaService) -> DeleteResult:
        """
        Remove the stored image, release the photo's tags from the index and
        delete the record. The record goes even if the storage delete failed;
        the orphaned asset is logged.
        """
        result = await media.delete(photo.image_url)
        if not result.success:
            log.error("Storage cleanup failed for photo %s (%s): %s", photo.id, photo.image_url, result.message)
        keys = await PhotoTag.filter(photo_id=photo.id).values_list("key", flat=True)
        await photo.delete()
        if keys:
            await self.tag_index.decrement(keys)
        return result
