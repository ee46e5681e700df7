from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from aquaforum.models import AquariumType, VisionStatus


class VisionTagOut(BaseModel):
    tag: str
    confidence: float
    auto_generated: bool = True
    source: str | None = None


class PhotoOut(BaseModel):
    id: UUID
    user_id: str
    title: str
    description: str = ""
    category: AquariumType
    is_public: bool = True
    image_url: str
    thumbnail_url: str = ""
    original_url: str = ""
    provider: str
    tags: List[str] = []
    vision_status: VisionStatus
    views: int = 0
    likes_count: int = 0
    variants: Dict[str, str] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UploadOut(BaseModel):
    photo: PhotoOut
    urls: Dict[str, Any]
    tagging_queued: bool
    job_id: str | None = None


class PhotoUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    category: Optional[AquariumType] = None
    is_public: Optional[bool] = None
    tags: Optional[List[str]] = None

    @field_validator("title", "description", "category", "is_public", mode="before")
    @classmethod
    def reject_null(cls, v):
        if v is None:
            raise ValueError("may be omitted but not null")
        return v

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("tags")
    @classmethod
    def strip_tags(cls, v):
        if v is None:
            return v
        return [t.strip() for t in v if t and t.strip()]


class TaggingStatusOut(BaseModel):
    photo_id: UUID
    status: VisionStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    model: str | None = None
    processing_ms: int | None = None
    vision_tags: List[VisionTagOut] = []
    tags: List[str] = []


class LikeOut(BaseModel):
    liked: bool
    likes_count: int


class DeleteOut(BaseModel):
    deleted: bool
    storage: Dict[str, Any]
