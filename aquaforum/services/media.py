"""
Unified media service.

One provider is chosen at startup from MEDIA_SERVICE_PROVIDER; callers only
ever talk to MediaService. Deletes are routed by URL shape so photos stored
before a provider switch are still cleaned up where they live.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Type, TypeVar

from aquaforum.services.errors import MediaUploadError
from aquaforum.services.results import DeleteOutcome, DeleteResult, ImageVariants, UploadResult, VisionTag

log = logging.getLogger("aquaforum.media")

T = TypeVar("T")

VARIANT_SIZES = {
    "thumbnail": (200, 200),
    "medium": (600, 400),
    "large": (1200, 800),
}


def is_remote_url(url: Optional[str]) -> bool:
    return bool(url) and url.startswith("http")


def transform_segment(width: int, height: int) -> str:
    return f"w_{width},h_{height},c_fill,q_auto,f_auto"


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    retry_on: Tuple[Type[BaseException], ...],
    label: str,
) -> T:
    """Run ``operation`` up to ``attempts`` times, sleeping base * 2**n between tries."""
    last_exc: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            last_exc = exc
            if attempt == attempts:
                break
            delay = base_delay * (2 ** (attempt - 1))
            log.warning("%s failed (attempt %s/%s): %s; retrying in %.1fs", label, attempt, attempts, exc, delay)
            await asyncio.sleep(delay)
    raise MediaUploadError(f"{label} failed after {attempts} attempts: {last_exc}") from last_exc


class MediaProvider(ABC):
    name: str = "base"

    @abstractmethod
    async def upload(
        self,
        file_path: str,
        *,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
        tags: Sequence[str] = (),
    ) -> UploadResult:
        ...

    @abstractmethod
    async def delete(self, url: str) -> DeleteResult:
        ...

    def get_image_variants(self, url: str) -> ImageVariants:
        return ImageVariants.same(url)

    async def get_ai_tags(self, url: str) -> List[VisionTag]:
        return []

    async def check_status(self) -> dict:
        return {"available": True, "provider": self.name}


class MediaService:
    """Facade over the configured provider plus the local filesystem."""

    def __init__(self, provider: MediaProvider, local: MediaProvider):
        self.provider = provider
        self.local = local

    @property
    def provider_name(self) -> str:
        return self.provider.name

    async def upload(self, file_path: str, **options) -> UploadResult:
        return await self.provider.upload(file_path, **options)

    async def delete(self, url: str) -> DeleteResult:
        """Delete from whichever backend produced ``url``. Never raises."""
        if not url:
            return DeleteResult(DeleteOutcome.NOT_FOUND, self.provider.name, "No URL")
        target = self.provider if is_remote_url(url) else self.local
        if is_remote_url(url) and target is self.local:
            return DeleteResult(
                DeleteOutcome.UNSUPPORTED,
                self.local.name,
                "Remote URL but no remote provider is configured",
            )
        try:
            result = await target.delete(url)
        except Exception as exc:
            log.exception("Delete via %s failed for %s", target.name, url)
            return DeleteResult(DeleteOutcome.FAILED, target.name, str(exc))
        if not result.success:
            log.warning("Delete via %s did not succeed for %s: %s", target.name, url, result.message)
        return result

    def get_image_variants(self, url: str) -> ImageVariants:
        if not is_remote_url(url):
            return ImageVariants.same(url)
        return self.provider.get_image_variants(url)

    async def get_ai_tags(self, url: str) -> List[VisionTag]:
        if self.provider is self.local or not is_remote_url(url):
            return []
        return await self.provider.get_ai_tags(url)

    async def check_status(self) -> dict:
        return await self.provider.check_status()


def get_provider(settings, local: MediaProvider) -> MediaProvider:
    name = settings.MEDIA_SERVICE_PROVIDER
    if name == "cloudinary":
        from aquaforum.services.cloudinary_storage import CloudinaryProvider
        return CloudinaryProvider.from_settings(settings)
    if name == "shortpixel":
        from aquaforum.services.shortpixel_storage import ShortPixelProvider
        return ShortPixelProvider.from_settings(settings)
    if name != "local":
        log.warning("Unknown media provider: %s, using local", name)
    return local


def build_media_service(settings) -> MediaService:
    from aquaforum.services.storage import LocalStorage
    local = LocalStorage(settings.UPLOAD_DIR)
    provider = get_provider(settings, local)
    log.info("Media provider: %s", provider.name)
    return MediaService(provider, local)
