"""
Text tagging for forum posts: title + body in, lowercase tag strings out.

The model gives no per-tag confidence on this path, so every tag carries
TEXT_TAG_CONFIDENCE.
"""

import logging
import re
import time
from typing import Any, Dict, List, Optional

from aquaforum.services.llm import LLMClient, embedded_json
from aquaforum.services.results import TaggingResult, VisionTag

log = logging.getLogger("aquaforum.text_tagging")

TEXT_TAG_CONFIDENCE = 0.85
MAX_TAG_LENGTH = 50

_QUOTED_RE = re.compile(r'"([^"]+)"')
_SPLIT_RE = re.compile(r"[\s,;.!?]+")

SYSTEM_PROMPT = (
    "You are an expert at identifying relevant tags for aquarium forum posts. "
    "Return ONLY a JSON array of tag strings."
)


def build_prompt(title: str, content: str, max_tags: int) -> str:
    return (
        "You are an expert at analyzing aquarium and fish-keeping forum posts.\n"
        f"Analyze the following post and extract up to {max_tags} relevant tags.\n\n"
        "Return ONLY a JSON array of tag strings. Each tag should be:\n"
        '- A single word or common phrase (e.g., "betta", "planted-tank", "ich")\n'
        "- Relevant to aquarium keeping, fish species, equipment, plants, diseases, or topics\n"
        "- Lowercase\n\n"
        f"Title: {title}\n\n"
        f"Content: {content}\n\n"
        "Examples of good tags: freshwater, neon-tetra, planted, filtration, ich, breeding, community-tank.\n\n"
        "Return ONLY the JSON array, nothing else."
    )


def _names(entries: List[Any]) -> List[str]:
    names = []
    for entry in entries:
        if isinstance(entry, str):
            names.append(entry)
        elif isinstance(entry, dict):
            name = entry.get("tag") or entry.get("name")
            if isinstance(name, str):
                names.append(name)
    return names


def _candidates(raw: str) -> List[str]:
    parsed = embedded_json(raw)
    if isinstance(parsed, dict):
        return _names(parsed["tags"])
    if isinstance(parsed, list):
        return _names(parsed)

    quoted = _QUOTED_RE.findall(raw)
    if quoted:
        return quoted

    return [w for w in _SPLIT_RE.split(raw) if len(w) > 2]


def parse_text_tags(raw: Optional[str], max_tags: int = 10) -> List[str]:
    """Lowercased, deduplicated tag strings, 2..50 chars, at most ``max_tags``."""
    if not raw:
        return []
    tags: List[str] = []
    for candidate in _candidates(raw):
        tag = candidate.strip().lower()
        if len(tag) < 2 or len(tag) > MAX_TAG_LENGTH or tag in tags:
            continue
        tags.append(tag)
        if len(tags) >= max_tags:
            break
    return tags


class TextTaggingService:
    def __init__(self, llm: LLMClient, model_id: str):
        self.llm = llm
        self.model_id = model_id

    async def generate_tags_from_text(
        self,
        title: str,
        content: str,
        max_tags: int = 10,
        min_confidence: float = 0.5,
    ) -> TaggingResult:
        started = time.monotonic()
        try:
            payload = self.llm.protocol.text_payload(
                self.model_id, SYSTEM_PROMPT, build_prompt(title, content, max_tags)
            )
            raw = await self.llm.generate(payload)
        except Exception as exc:
            log.error("Text tagging failed: %s", exc)
            return TaggingResult(
                success=False,
                error=str(exc),
                metadata={"model": self.model_id, "provider": self.llm.provider},
            )

        names = parse_text_tags(raw, max_tags) if TEXT_TAG_CONFIDENCE >= min_confidence else []
        tags = [
            VisionTag(tag=name, confidence=TEXT_TAG_CONFIDENCE, auto_generated=True, source="text-llm")
            for name in names
        ]
        elapsed = int((time.monotonic() - started) * 1000)
        log.info("Generated %s text tags in %sms", len(tags), elapsed)
        return TaggingResult(
            success=True,
            tags=tags,
            metadata={
                "model": self.model_id,
                "provider": self.llm.provider,
                "processing_time_ms": elapsed,
                "tags_count": len(tags),
                "max_tags": max_tags,
            },
        )

    async def health_check(self) -> Dict[str, Any]:
        healthy = await self.llm.is_available()
        return {"healthy": healthy, "model": self.model_id, "provider": self.llm.provider, "base_url": self.llm.base_url}
