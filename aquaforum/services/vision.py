"""
Vision tagging: ask a vision-capable LLM for aquarium tags on one image.
"""

import asyncio
import base64
import logging
import math
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Sequence

from aquaforum.services.errors import ImageUnavailableError, ServiceUnavailableError
from aquaforum.services.llm import LLMClient, embedded_json, mime_for
from aquaforum.services.results import TaggingResult, VisionTag

log = logging.getLogger("aquaforum.vision")

FALLBACK_CONFIDENCE = 0.8

_QUOTED_RE = re.compile(r'"([^"]+)"')
_WORDS_RE = re.compile(r"\w+(?:\s+\w+){0,2}")

SYSTEM_PROMPT = (
    "You are an expert at identifying aquarium fish, plants, and aquatic environments.\n"
    "Analyze the image and provide relevant tags. Return ONLY JSON with confidence scores.\n"
    'Format: {"tags": [{"tag": "name", "confidence": 0.95}]}'
)


def user_prompt(max_tags: int) -> str:
    return (
        f"Analyze this aquarium image and provide up to {max_tags} relevant tags as JSON.\n"
        "Focus on fish species, plant types, aquarium type (freshwater/saltwater), "
        "decorations and water conditions. Return ONLY JSON."
    )


def _to_float(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _structured(entries: Sequence[Any], max_tags: int, min_confidence: float) -> List[VisionTag]:
    tags: List[VisionTag] = []
    for entry in entries:
        if isinstance(entry, dict):
            name = entry.get("tag") or entry.get("name")
            confidence = _to_float(entry.get("confidence"))
        elif isinstance(entry, str):
            name, confidence = entry, FALLBACK_CONFIDENCE
        else:
            continue
        if not isinstance(name, str) or not name.strip():
            continue
        if confidence < min_confidence:
            continue
        tags.append(VisionTag(tag=name.strip(), confidence=confidence))
    return tags[:max_tags]


def parse_vision_tags(raw: str, max_tags: int = 10, min_confidence: float = 0.5) -> List[VisionTag]:
    """
    Salvage ``(tag, confidence)`` pairs from free-form model output.

    Tried in order, first hit wins:
      1. a JSON object with a ``tags`` array
      2. a bare JSON array
      3. quoted strings, else short word runs, at a fixed confidence
    Every tier drops entries under ``min_confidence`` and keeps at most
    ``max_tags``.
    """
    if not raw:
        return []

    parsed = embedded_json(raw)
    if isinstance(parsed, dict):
        return _structured(parsed["tags"], max_tags, min_confidence)
    if isinstance(parsed, list):
        return _structured(parsed, max_tags, min_confidence)

    if FALLBACK_CONFIDENCE < min_confidence:
        return []
    tokens = _QUOTED_RE.findall(raw) or _WORDS_RE.findall(raw)
    seen = set()
    tags: List[VisionTag] = []
    for token in tokens:
        tag = token.strip().lower()
        if len(tag) < 2 or tag in seen or "confidence" in tag:
            continue
        seen.add(tag)
        tags.append(VisionTag(tag=tag, confidence=FALLBACK_CONFIDENCE))
        if len(tags) >= max_tags:
            break
    return tags


def encode_image(image_path: str) -> str:
    try:
        return base64.b64encode(Path(image_path).read_bytes()).decode("ascii")
    except OSError as exc:
        raise ImageUnavailableError(f"Failed to read image: {exc}") from exc


class VisionTaggingService:
    def __init__(self, llm: LLMClient, model_id: str):
        self.llm = llm
        self.model_id = model_id

    def _metadata(self, started: float, **extra) -> Dict[str, Any]:
        return {
            "model": self.model_id,
            "provider": self.llm.provider,
            "processing_time_ms": int((time.monotonic() - started) * 1000),
            **extra,
        }

    async def generate_tags(self, image_path: str, max_tags: int = 10, min_confidence: float = 0.5) -> TaggingResult:
        """Tag one image. Never raises; check ``success`` on the result."""
        started = time.monotonic()
        try:
            if not await self.llm.is_available(self.model_id):
                raise ServiceUnavailableError("Vision LLM not available")

            image_b64 = await asyncio.to_thread(encode_image, image_path)
            payload = self.llm.protocol.vision_payload(
                self.model_id, SYSTEM_PROMPT, user_prompt(max_tags), image_b64, mime_for(image_path)
            )
            raw = await self.llm.generate(payload)
            tags = parse_vision_tags(raw, max_tags, min_confidence)
        except Exception as exc:
            log.error("Vision LLM tagging error for %s: %s", image_path, exc)
            return TaggingResult(
                success=False,
                error=str(exc),
                metadata=self._metadata(started, error=str(exc)),
            )

        return TaggingResult(
            success=True,
            tags=tags,
            metadata=self._metadata(
                started,
                tags_count=len(tags),
                max_tags=max_tags,
                image=Path(image_path).name,
            ),
        )

    async def batch_generate_tags(
        self, image_paths: Sequence[str], max_tags: int = 10, min_confidence: float = 0.5
    ) -> List[Dict[str, Any]]:
        results = await asyncio.gather(
            *(self.generate_tags(p, max_tags, min_confidence) for p in image_paths)
        )
        return [
            {"image_path": path, "success": r.success, "tags": [t.to_dict() for t in r.tags], "error": r.error}
            for path, r in zip(image_paths, results)
        ]

    async def health_check(self) -> Dict[str, Any]:
        if await self.llm.is_available(self.model_id):
            return {"healthy": True, "model": self.model_id, "provider": self.llm.provider, "base_url": self.llm.base_url}
        return {"healthy": False, "model": self.model_id, "provider": self.llm.provider, "error": "Model not available"}
