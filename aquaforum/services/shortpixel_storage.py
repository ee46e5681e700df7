"""
ShortPixel optimize-and-deliver provider.

ShortPixel optimizes and serves images but does not own their lifecycle, so
delete reports DeleteOutcome.UNSUPPORTED instead of pretending to succeed.
"""

import asyncio
import base64
import logging
import random
import re
import time
from pathlib import Path
from typing import Optional, Sequence

import aiohttp

from aquaforum.services.errors import MediaUploadError
from aquaforum.services.media import MediaProvider, VARIANT_SIZES, retry_with_backoff, transform_segment
from aquaforum.services.results import DeleteOutcome, DeleteResult, ImageVariants, UploadResult

log = logging.getLogger("aquaforum.media.shortpixel")

DEFAULT_CDN = "https://cdn.shortpixel.ai"
CDN_URL_RE = re.compile(r"^(https://cdn\.shortpixel\.ai/[^/]+/)(.+)$")


def _base36(n: int) -> str:
    chars = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = chars[r] + out
    return out or "0"


def unique_asset_id() -> str:
    return _base36(int(time.time() * 1000)) + _base36(random.getrandbits(40))


class ShortPixelProvider(MediaProvider):
    name = "shortpixel"

    def __init__(
        self,
        api_key: str,
        *,
        api_secret: str = "",
        api_url: str = "https://api.shortpixel.com/v2",
        retry_count: int = 3,
        timeout: float = 30.0,
        max_long_side: int = 1024,
        retry_delay: float = 1.0,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.api_url = api_url.rstrip("/")
        self.retry_count = max(1, retry_count)
        self.timeout = timeout
        self.max_long_side = max_long_side or 1024
        self.retry_delay = retry_delay

    @classmethod
    def from_settings(cls, settings) -> "ShortPixelProvider":
        return cls(
            settings.SHORTPIXEL_API_KEY,
            api_secret=settings.SHORTPIXEL_API_SECRET,
            api_url=settings.SHORTPIXEL_API_URL,
            retry_count=settings.SHORTPIXEL_RETRY_COUNT,
            timeout=settings.SHORTPIXEL_TIMEOUT,
            max_long_side=settings.IMAGE_MAX_LONG_SIDE,
            retry_delay=settings.MEDIA_RETRY_DELAY,
        )

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_secret:
            headers["Authorization"] = f"Bearer {self.api_key}:{self.api_secret}"
        return headers

    async def _send(self, method: str, endpoint: str, payload: Optional[dict] = None) -> dict:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(
                method,
                f"{self.api_url}{endpoint}",
                json=payload,
                headers=self._headers(),
            ) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError as exc:
                    raise MediaUploadError(f"Invalid JSON response from ShortPixel: {exc}") from exc
                if response.status >= 400:
                    message = body.get("message") if isinstance(body, dict) else None
                    raise MediaUploadError(message or f"HTTP {response.status}")
                return body

    async def upload(
        self,
        file_path: str,
        *,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
        tags: Sequence[str] = (),
    ) -> UploadResult:
        if not self.api_key:
            raise RuntimeError("ShortPixel API key not configured")

        data = await asyncio.to_thread(Path(file_path).read_bytes)
        payload = {
            "apikey": self.api_key,
            "image_base64": base64.b64encode(data).decode("ascii"),
            "lossless": False,
            "keep_exif": True,
            "convert_to": ["webp", "avif"],
            "resize": {
                "width": self.max_long_side,
                "height": self.max_long_side,
                "strategy": "fit",
            },
            "wait": True,
        }
        result = await retry_with_backoff(
            lambda: self._send("POST", "/optimize", payload),
            attempts=self.retry_count,
            base_delay=self.retry_delay,
            retry_on=(aiohttp.ClientError, asyncio.TimeoutError),
            label="ShortPixel upload",
        )
        if not result or not result.get("success"):
            raise MediaUploadError(result.get("message") if result else "Upload failed")

        asset_id = unique_asset_id()
        ext = Path(file_path).suffix.lstrip(".").lower() or "jpg"
        info = result.get("data") or {}
        base = (info.get("cdn_url") or DEFAULT_CDN).rstrip("/")
        return UploadResult(
            url=f"{base}/{asset_id}.{ext}",
            thumbnail_url=f"{base}/{asset_id}_thumb.{ext}",
            original_url=f"{base}/{asset_id}_original.{ext}",
            provider=self.name,
            metadata={
                "original_size": len(data),
                "optimized_size": info.get("optimized_size", 0),
                "compression_ratio": info.get("compression", 0),
            },
            extra_urls={
                "webp": f"{base}/{asset_id}.webp",
                "avif": f"{base}/{asset_id}.avif",
            },
        )

    async def delete(self, url: str) -> DeleteResult:
        log.warning("ShortPixel delete not supported - images are managed externally (%s)", url)
        return DeleteResult(DeleteOutcome.UNSUPPORTED, self.name, "Delete not supported for ShortPixel CDN")

    def get_image_variants(self, url: str) -> ImageVariants:
        match = CDN_URL_RE.match(url or "")
        if not match:
            return ImageVariants.same(url)
        base, filename = match.groups()
        variants = {
            name: f"{base}{transform_segment(w, h)}/{filename}"
            for name, (w, h) in VARIANT_SIZES.items()
        }
        return ImageVariants(original=url, **variants)

    async def check_status(self) -> dict:
        try:
            result = await self._send("GET", "/status")
        except (aiohttp.ClientError, asyncio.TimeoutError, MediaUploadError) as exc:
            return {"available": False, "provider": self.name, "error": str(exc)}
        return {
            "available": True,
            "provider": self.name,
            "credits": result.get("credits_remaining"),
            "plan": result.get("plan_type"),
        }
