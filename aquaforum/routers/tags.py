import math
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from aquaforum.core.deps import get_services
from aquaforum.core.identity import AuthUser, require_user
from aquaforum.schemas.tag import TagOut, TagPage, TextTagRequest, TextTagResponse
from aquaforum.services.registry import Services
from aquaforum.services.tag_index import serialize_tag

router = APIRouter(prefix="/tags", tags=["tags"])


@router.get("", response_model=TagPage)
async def list_tags(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    services: Services = Depends(get_services),
):
    tags, total = await services.tag_index.list_tags(page, limit)
    return TagPage(
        tags=[TagOut(**serialize_tag(t)) for t in tags],
        page=page,
        limit=limit,
        total=total,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/popular", response_model=List[TagOut])
async def popular_tags(
    limit: int = Query(10, ge=1, le=100),
    services: Services = Depends(get_services),
):
    """Most used tags; cached in Redis for 10 minutes."""
    return await services.tag_index.popular(limit)


@router.get("/suggestions", response_model=List[TagOut])
async def tag_suggestions(
    q: Optional[str] = None,
    limit: int = Query(5, ge=1, le=50),
    services: Services = Depends(get_services),
):
    tags = await services.tag_index.suggestions(q, limit)
    return [TagOut(**serialize_tag(t)) for t in tags]


@router.post("/generate", response_model=TextTagResponse)
async def generate_tags(
    body: TextTagRequest,
    user: AuthUser = Depends(require_user),
    services: Services = Depends(get_services),
):
    """Suggest tags for a draft post from its title and body."""
    result = await services.text_tagging.generate_tags_from_text(
        body.title, body.content, max_tags=body.max_tags, min_confidence=body.min_confidence
    )
    return TextTagResponse(
        success=result.success,
        tags=[t.to_dict() for t in result.tags],
        error=result.error,
        metadata=result.metadata,
    )
