from enum import Enum

from tortoise import fields
from .base import BaseModel


class AquariumType(str, Enum):
    FRESHWATER = "Freshwater"
    SALTWATER = "Saltwater"
    PLANTED = "Planted"
    OTHER = "Other"


class VisionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Photo(BaseModel):
    user_id = fields.CharField(max_length=64, index=True)
    image_url = fields.CharField(max_length=1024)
    thumbnail_url = fields.CharField(max_length=1024, default="")
    original_url = fields.CharField(max_length=1024, default="")
    provider = fields.CharField(max_length=32, default="local")
    title = fields.CharField(max_length=200)
    description = fields.CharField(max_length=1000, default="")
    category = fields.CharEnumField(AquariumType, default=AquariumType.OTHER, index=True)
    is_public = fields.BooleanField(default=True)
    metadata = fields.JSONField(null=True)

    # Written only by the tagging worker
    vision_status = fields.CharEnumField(VisionStatus, default=VisionStatus.PENDING, index=True)
    vision_started_at = fields.DatetimeField(null=True)
    vision_completed_at = fields.DatetimeField(null=True)
    vision_error = fields.TextField(null=True)
    vision_model = fields.CharField(max_length=255, null=True)
    vision_processing_ms = fields.IntField(null=True)
    vision_tags = fields.JSONField(null=True)

    views = fields.IntField(default=0)
    likes_count = fields.IntField(default=0)

    tag_links: fields.ReverseRelation["PhotoTag"]
    likes: fields.ReverseRelation["PhotoLike"]

    class Meta:
        table = "photos"
        ordering = ["-created_at"]


class PhotoTag(BaseModel):
    photo = fields.ForeignKeyField("models.Photo", related_name="tag_links", on_delete=fields.CASCADE)
    # key is the lowercase form used for dedup; name keeps the first writer's casing
    key = fields.CharField(max_length=50, index=True)
    name = fields.CharField(max_length=50)
    position = fields.IntField(default=0)

    class Meta:
        table = "photo_tags"
        unique_together = ("photo", "key")


class PhotoLike(BaseModel):
    photo = fields.ForeignKeyField("models.Photo", related_name="likes", on_delete=fields.CASCADE)
    user_id = fields.CharField(max_length=64)

    class Meta:
        table = "photo_likes"
        unique_together = ("photo", "user_id")
