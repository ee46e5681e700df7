"""
Tagging worker: one job attempt against one photo.

    pending -> processing -> completed | failed

Every attempt starts by writing ``processing``. Errors are recorded on the
photo and re-raised so the queue can schedule the next attempt. A photo
deleted while its job is queued or running ends the job as ``skipped``.
"""

import asyncio
import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import httpx

from aquaforum.models import VisionStatus
from aquaforum.services.errors import ImageUnavailableError, TaggingError
from aquaforum.services.media import is_remote_url
from aquaforum.services.metrics import record_tagging
from aquaforum.services.photo_store import NO_TAGS_NOTE, PhotoStore
from aquaforum.services.queue import TaggingJob
from aquaforum.services.results import TaggingResult
from aquaforum.services.status_feed import StatusEvent, StatusFeed
from aquaforum.services.vision import VisionTaggingService

log = logging.getLogger("aquaforum.jobs.tagging")

SKIPPED = "skipped"


class TaggingWorker:
    def __init__(
        self,
        vision: VisionTaggingService,
        store: PhotoStore,
        http: httpx.AsyncClient,
        feed: StatusFeed,
        *,
        max_tags: int = 15,
        min_confidence: float = 0.5,
        temp_dir: Optional[str] = None,
    ):
        self.vision = vision
        self.store = store
        self.http = http
        self.feed = feed
        self.max_tags = max_tags
        self.min_confidence = min_confidence
        self.temp_dir = Path(temp_dir or tempfile.gettempdir())

    async def _publish(self, job: TaggingJob, status: str, error: Optional[str] = None) -> None:
        await self.feed.publish(StatusEvent(photo_id=job.photo_id, user_id=job.user_id, status=status, error=error))

    def _skipped(self, job: TaggingJob, started: float) -> Dict[str, Any]:
        log.warning("Photo %s no longer exists; skipping job %s", job.photo_id, job.id)
        record_tagging(SKIPPED, time.monotonic() - started)
        return {"status": SKIPPED, "photo_id": job.photo_id, "tags_count": 0}

    async def _download(self, job: TaggingJob) -> Path:
        target = self.temp_dir / f"vision-{job.photo_id}-{int(time.time() * 1000)}.jpg"
        try:
            response = await self.http.get(job.image_url, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise ImageUnavailableError(f"Image download failed: {exc}") from exc
        if response.status_code != 200:
            raise ImageUnavailableError(f"Image download failed: HTTP {response.status_code}")
        await asyncio.to_thread(target.write_bytes, response.content)
        return target

    async def _source_image(self, job: TaggingJob) -> Tuple[Path, Optional[Path]]:
        """Return (path to tag, temp file to remove afterwards)."""
        if job.image_path and Path(job.image_path).is_file():
            return Path(job.image_path), None
        if is_remote_url(job.image_url):
            temp = await self._download(job)
            return temp, temp
        raise ImageUnavailableError("Image file not available")

    async def _tag(self, job: TaggingJob, holder: Dict[str, Path]) -> TaggingResult:
        path, temp = await self._source_image(job)
        if temp is not None:
            holder["temp"] = temp
        result = await self.vision.generate_tags(str(path), self.max_tags, self.min_confidence)
        if not result.success:
            raise TaggingError(result.error or "Vision tagging failed")
        return result

    async def process(self, job: TaggingJob) -> Dict[str, Any]:
        started = time.monotonic()
        if not await self.store.exists(job.photo_id):
            return self._skipped(job, started)

        log.info("Processing photo %s (attempt %s)", job.photo_id, job.attempts_made or 1)
        await self.store.mark_processing(job.photo_id)
        await self._publish(job, VisionStatus.PROCESSING.value)

        holder: Dict[str, Path] = {}
        try:
            try:
                result = await asyncio.wait_for(self._tag(job, holder), timeout=job.timeout)
            except asyncio.TimeoutError as exc:
                raise TaggingError(f"Tagging timed out after {job.timeout:.0f}s") from exc

            if not await self.store.exists(job.photo_id):
                return self._skipped(job, started)

            names = result.tag_names
            added = await self.store.merge_tags(job.photo_id, names) if names else []
            note = None if names else NO_TAGS_NOTE
            await self.store.mark_completed(
                job.photo_id,
                model=result.metadata.get("model"),
                processing_ms=result.metadata.get("processing_time_ms"),
                vision_tags=[t.to_dict() for t in result.tags],
                note=note,
            )
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            if not await self.store.exists(job.photo_id):
                return self._skipped(job, started)
            log.error("Tagging failed for photo %s: %s", job.photo_id, message)
            await self.store.mark_failed(job.photo_id, message)
            await self._publish(job, VisionStatus.FAILED.value, message)
            record_tagging("failed", time.monotonic() - started)
            raise
        finally:
            temp = holder.get("temp")
            if temp is not None:
                temp.unlink(missing_ok=True)

        await self._publish(job, VisionStatus.COMPLETED.value, note)
        record_tagging("completed", time.monotonic() - started)
        log.info("Photo %s tagged with %s tags (%s new)", job.photo_id, len(names), len(added))
        return {"status": VisionStatus.COMPLETED.value, "photo_id": job.photo_id, "tags_count": len(names), "added": added}
