"""
Process-wide service container.

Built once per process from Settings: by the FastAPI lifespan for the API
and by each rq job for the worker. Routes reach it as
``request.app.state.services``.
"""

import logging
from typing import Optional

import httpx

from aquaforum.models import Photo
from aquaforum.services.cache import JsonCache
from aquaforum.services.llm import LLMClient
from aquaforum.services.media import MediaService, build_media_service
from aquaforum.services.photo_store import PhotoStore
from aquaforum.services.queue import JobHandle, JobQueue, TaggingJob, build_queue
from aquaforum.services.status_feed import StatusFeed
from aquaforum.services.tag_index import TagUsageIndex
from aquaforum.services.text_tagging import TextTaggingService
from aquaforum.services.vision import VisionTaggingService
from aquaforum.workers.tagging import TaggingWorker

log = logging.getLogger("aquaforum.services")


class Services:
    def __init__(
        self,
        *,
        settings,
        http: httpx.AsyncClient,
        media: MediaService,
        llm: LLMClient,
        cache: JsonCache,
        feed: Optional[StatusFeed] = None,
        queue_enabled: bool = True,
    ):
        self.settings = settings
        self.http = http
        self.media = media
        self.llm = llm
        self.cache = cache
        self.vision = VisionTaggingService(llm, settings.LLM_MODEL_ID)
        self.text_tagging = TextTaggingService(llm, settings.TEXT_LLM_MODEL_ID)
        self.tag_index = TagUsageIndex(cache)
        self.store = PhotoStore(self.tag_index)
        self.feed = feed or StatusFeed()
        self.worker = TaggingWorker(
            self.vision,
            self.store,
            http,
            self.feed,
            max_tags=settings.VISION_MAX_TAGS,
            min_confidence=settings.VISION_MIN_CONFIDENCE,
        )
        self.queue: Optional[JobQueue] = build_queue(settings, self.worker.process) if queue_enabled else None

    @classmethod
    def from_settings(cls, settings, *, queue_enabled: bool = True, http: Optional[httpx.AsyncClient] = None) -> "Services":
        http = http or httpx.AsyncClient(timeout=settings.LLM_TIMEOUT)
        llm = LLMClient(
            http,
            settings.LLM_BASE_URL,
            api_key=settings.LLM_API_KEY,
            provider=settings.LLM_PROVIDER,
            timeout=settings.LLM_TIMEOUT,
            max_retries=settings.LLM_MAX_RETRIES,
            retry_delay=settings.LLM_RETRY_DELAY,
        )
        cache = JsonCache.from_url(settings.REDIS_URL if settings.redis_enabled else None)
        return cls(
            settings=settings,
            http=http,
            media=build_media_service(settings),
            llm=llm,
            cache=cache,
            feed=StatusFeed.from_url(settings.REDIS_URL if settings.redis_enabled else None),
            queue_enabled=queue_enabled,
        )

    async def start(self) -> None:
        # only the API process listens; rq jobs just publish
        if self.queue is not None:
            await self.feed.start()
            await self.queue.start()

    async def close(self) -> None:
        if self.queue is not None:
            await self.queue.close()
        await self.feed.close()
        await self.cache.close()
        await self.http.aclose()
        log.info("Services closed")

    async def enqueue_tagging(
        self,
        photo: Photo,
        *,
        image_path: Optional[str] = None,
        priority: str = "normal",
        delay: float = 0.0,
    ) -> JobHandle:
        if self.queue is None:
            raise RuntimeError("This process was built without a job queue")
        job = TaggingJob(
            photo_id=str(photo.id),
            user_id=photo.user_id,
            image_path=image_path,
            image_url=photo.image_url,
            priority=priority,
            delay=delay,
            timeout=self.settings.VISION_JOB_TIMEOUT,
        )
        return await self.queue.enqueue(job)
