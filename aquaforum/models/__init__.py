# Import all models for Tortoise ORM registration
from .base import BaseModel
from .photo import Photo, PhotoTag, PhotoLike, AquariumType, VisionStatus
from .tag import Tag

__all__ = [
    "BaseModel",
    "Photo",
    "PhotoTag",
    "PhotoLike",
    "AquariumType",
    "VisionStatus",
    "Tag",
]
