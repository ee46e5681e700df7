"""
Result objects returned across service boundaries.

Storage deletes and the LLM tagging services report failures through these
objects instead of raising, so callers must check ``success``.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass
class VisionTag:
    tag: str
    confidence: float
    auto_generated: bool = True
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"tag": self.tag, "confidence": self.confidence, "auto_generated": self.auto_generated}
        if self.source:
            data["source"] = self.source
        return data


@dataclass
class TaggingResult:
    success: bool
    tags: List[VisionTag] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def tag_names(self) -> List[str]:
        return [t.tag for t in self.tags]


@dataclass
class UploadResult:
    url: str
    thumbnail_url: str
    original_url: str
    provider: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    extra_urls: Dict[str, str] = field(default_factory=dict)
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DeleteOutcome(str, Enum):
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    # The provider does not own the asset lifecycle; nothing was removed
    UNSUPPORTED = "unsupported"
    FAILED = "failed"
    # The URL does not map to anything this provider stores
    INVALID_URL = "invalid_url"


@dataclass
class DeleteResult:
    outcome: DeleteOutcome
    provider: str
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome not in (DeleteOutcome.FAILED, DeleteOutcome.INVALID_URL)

    @property
    def deleted(self) -> bool:
        return self.outcome == DeleteOutcome.DELETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "deleted": self.deleted,
            "outcome": self.outcome.value,
            "provider": self.provider,
            "message": self.message,
        }


@dataclass
class ImageVariants:
    original: str
    thumbnail: str
    medium: str
    large: str

    @classmethod
    def same(cls, url: str) -> "ImageVariants":
        return cls(original=url, thumbnail=url, medium=url, large=url)

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class ResizeResult:
    success: bool
    input_path: str
    output_path: Optional[str] = None
    width: int = 0
    height: int = 0
    format: Optional[str] = None
    quality: Optional[int] = None
    error: Optional[str] = None
