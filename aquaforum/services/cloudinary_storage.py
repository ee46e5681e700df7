# aquaforum/services/cloudinary_storage.py
import asyncio
import logging
import re
from typing import List, Optional, Sequence

import cloudinary
import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader
import cloudinary.utils

from aquaforum.services.media import MediaProvider, VARIANT_SIZES, retry_with_backoff, transform_segment
from aquaforum.services.results import DeleteOutcome, DeleteResult, ImageVariants, UploadResult, VisionTag

log = logging.getLogger("aquaforum.media.cloudinary")

PUBLIC_ID_RE = re.compile(r"/v\d+/(.+?)(?:\.|$)")
UPLOAD_ATTEMPTS = 3
AI_TAG_CONFIDENCE = 0.85


def public_id_from_url(url: str) -> Optional[str]:
    match = PUBLIC_ID_RE.search(url)
    return match.group(1) if match else None


class CloudinaryProvider(MediaProvider):
    """Cloudinary upload, delete, URL transformations and native tags."""

    name = "cloudinary"

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        *,
        folder: str = "aqua-forum",
        quality: str = "auto:best",
        fetch_format: str = "auto",
        retry_delay: float = 1.0,
    ):
        self.configured = bool(cloud_name and api_key and api_secret)
        self.folder = folder
        self.quality = quality
        self.fetch_format = fetch_format
        self.retry_delay = retry_delay
        if self.configured:
            cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)

    @classmethod
    def from_settings(cls, settings) -> "CloudinaryProvider":
        return cls(
            settings.CLOUDINARY_CLOUD_NAME,
            settings.CLOUDINARY_API_KEY,
            settings.CLOUDINARY_API_SECRET,
            folder=settings.CLOUDINARY_FOLDER,
            quality=settings.IMAGE_QUALITY_MODE,
            fetch_format=settings.IMAGE_OUTPUT_FORMAT,
            retry_delay=settings.MEDIA_RETRY_DELAY,
        )

    def _upload_once(self, file_path: str, options: dict) -> dict:
        return cloudinary.uploader.upload(file_path, **options)

    async def upload(
        self,
        file_path: str,
        *,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
        tags: Sequence[str] = (),
    ) -> UploadResult:
        if not self.configured:
            raise RuntimeError("Cloudinary not configured")

        options = {
            "folder": f"{self.folder}/{user_id or 'common'}",
            "resource_type": "image",
            "transformation": [
                {"quality": self.quality},
                {"fetch_format": self.fetch_format},
            ],
            "tags": list(tags),
            "context": f"title={title}" if title else "",
        }
        # GeneralError wraps transport failures inside the SDK
        result = await retry_with_backoff(
            lambda: asyncio.to_thread(self._upload_once, file_path, options),
            attempts=UPLOAD_ATTEMPTS,
            base_delay=self.retry_delay,
            retry_on=(cloudinary.exceptions.GeneralError, OSError),
            label="Cloudinary upload",
        )

        thumb, _ = cloudinary.utils.cloudinary_url(
            result["public_id"],
            width=200,
            height=200,
            crop="fill",
            quality="auto",
            fetch_format="auto",
            secure=True,
        )
        return UploadResult(
            url=result["secure_url"],
            thumbnail_url=thumb,
            original_url=result["secure_url"],
            provider=self.name,
            metadata={
                "public_id": result["public_id"],
                "format": result.get("format"),
                "width": result.get("width"),
                "height": result.get("height"),
                "bytes": result.get("bytes"),
                "resource_type": result.get("resource_type"),
            },
        )

    async def delete(self, url: str) -> DeleteResult:
        if not self.configured:
            return DeleteResult(DeleteOutcome.FAILED, self.name, "Cloudinary not configured")
        public_id = public_id_from_url(url)
        if not public_id:
            return DeleteResult(DeleteOutcome.INVALID_URL, self.name, "Invalid Cloudinary URL")
        try:
            result = await asyncio.to_thread(cloudinary.uploader.destroy, public_id)
        except (cloudinary.exceptions.Error, OSError) as exc:
            log.error("Cloudinary delete error for %s: %s", public_id, exc)
            return DeleteResult(DeleteOutcome.FAILED, self.name, str(exc))

        status = result.get("result")
        if status == "ok":
            return DeleteResult(DeleteOutcome.DELETED, self.name, status)
        if status == "not found":
            return DeleteResult(DeleteOutcome.NOT_FOUND, self.name, status)
        return DeleteResult(DeleteOutcome.FAILED, self.name, status)

    def get_image_variants(self, url: str) -> ImageVariants:
        if not url.startswith("http") or "/upload/" not in url:
            return ImageVariants.same(url)
        base, transform = url.split("/upload/", 1)
        variants = {
            name: f"{base}/upload/{transform_segment(w, h)}/{transform}"
            for name, (w, h) in VARIANT_SIZES.items()
        }
        return ImageVariants(original=url, **variants)

    async def get_ai_tags(self, url: str) -> List[VisionTag]:
        if not self.configured:
            log.info("Cloudinary not configured, skipping AI tagging")
            return []
        public_id = public_id_from_url(url)
        if not public_id:
            return []
        try:
            result = await asyncio.to_thread(
                cloudinary.api.resources_by_ids,
                [public_id],
                tags=True,
                context=True,
                image_metadata=True,
            )
        except (cloudinary.exceptions.Error, OSError) as exc:
            log.error("Cloudinary AI tagging error: %s", exc)
            return []

        resources = result.get("resources") or []
        if not resources:
            return []
        return [
            VisionTag(tag=tag, confidence=AI_TAG_CONFIDENCE, auto_generated=True, source="cloudinary")
            for tag in resources[0].get("tags") or []
        ]

    async def check_status(self) -> dict:
        try:
            result = await asyncio.to_thread(cloudinary.api.ping)
            return {"available": result.get("status") == "ok", "provider": self.name}
        except (cloudinary.exceptions.Error, OSError) as exc:
            return {"available": False, "provider": self.name, "error": str(exc)}
