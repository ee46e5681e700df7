from typing import List

from pydantic import BaseModel, Field


class TagOut(BaseModel):
    name: str
    usage_count: int


class TagPage(BaseModel):
    tags: List[TagOut]
    page: int
    limit: int
    total: int
    pages: int


class TextTagRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(default="", max_length=20000)
    max_tags: int = Field(default=10, ge=1, le=30)
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class TextTagResponse(BaseModel):
    success: bool
    tags: List[dict]
    error: str | None = None
    metadata: dict = {}
