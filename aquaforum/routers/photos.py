# aquaforum/routers/photos.py

import asyncio
import json
import logging
import math
from pathlib import Path
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import StreamingResponse
from redis.exceptions import RedisError
from tortoise.expressions import Q

from aquaforum.core.deps import get_services
from aquaforum.core.identity import AuthUser, optional_user, require_user
from aquaforum.core.rate_limit import limiter
from aquaforum.core.uploads import EXTENSIONS, read_image_upload
from aquaforum.models import AquariumType, Photo, VisionStatus
from aquaforum.schemas.photo import DeleteOut, LikeOut, PhotoOut, PhotoUpdate, TaggingStatusOut, UploadOut
from aquaforum.services.errors import MediaError
from aquaforum.services.images import resize_image
from aquaforum.services.metrics import record_upload
from aquaforum.services.registry import Services
from aquaforum.services.storage import unique_filename

router = APIRouter(prefix="/photos", tags=["photos"])
log = logging.getLogger("aquaforum.routers.photos")

SSE_KEEPALIVE_SECONDS = 15.0


def parse_tag_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [t.strip() for t in raw.split(",") if t.strip()]


def to_photo_out(photo: Photo, tags: List[str], variants: Optional[dict] = None) -> PhotoOut:
    return PhotoOut(
        id=photo.id,
        user_id=photo.user_id,
        title=photo.title,
        description=photo.description,
        category=photo.category,
        is_public=photo.is_public,
        image_url=photo.image_url,
        thumbnail_url=photo.thumbnail_url,
        original_url=photo.original_url,
        provider=photo.provider,
        tags=tags,
        vision_status=photo.vision_status,
        views=photo.views,
        likes_count=photo.likes_count,
        variants=variants,
        created_at=photo.created_at,
        updated_at=photo.updated_at,
    )


async def _get_photo(services: Services, photo_id: UUID) -> Photo:
    photo = await services.store.get(photo_id)
    if not photo:
        raise HTTPException(status_code=404, detail="Photo not found")
    return photo


def _can_view(photo: Photo, user: Optional[AuthUser]) -> bool:
    return photo.is_public or (user is not None and (user.is_admin or user.user_id == photo.user_id))


async def _stage_upload(services: Services, content: bytes, content_type: str) -> List[Path]:
    """Write the upload to a temp file and pre-resize it. Returns [to_upload, *to_cleanup]."""
    settings = services.settings
    tmp_dir = Path(settings.UPLOAD_DIR) / "tmp"
    tmp_dir.mkdir(parents=True, exist_ok=True)
    raw = tmp_dir / unique_filename(f"upload{EXTENSIONS.get(content_type, '.jpg')}")
    await asyncio.to_thread(raw.write_bytes, content)

    resized = raw.with_name(f"resized-{raw.stem}.jpg")
    result = await resize_image(str(raw), str(resized), settings.IMAGE_MAX_LONG_SIDE, settings.IMAGE_QUALITY)
    if result.success:
        return [resized, raw]
    log.warning("Resize failed, uploading original: %s", result.error)
    return [raw]


# Method: upload_photo()
@router.post("/upload", response_model=UploadOut, status_code=201)
@limiter.limit("30/minute")
async def upload_photo(
    request: Request,
    image: UploadFile = File(...),
    title: str = Form(..., min_length=1, max_length=200),
    description: str = Form("", max_length=1000),
    category: AquariumType = Form(AquariumType.OTHER),
    tags: str = Form(""),
    enable_auto_tagging: bool = Form(True),
    user: AuthUser = Depends(require_user),
    services: Services = Depends(get_services),
):
    title = title.strip()
    if not title:
        raise HTTPException(status_code=422, detail="Title must not be blank")
    content = await read_image_upload(image, services.settings.MAX_UPLOAD_SIZE_MB)
    manual_tags = parse_tag_list(tags)

    staged = await _stage_upload(services, content, image.content_type)
    try:
        uploaded = await services.media.upload(
            str(staged[0]), user_id=user.user_id, title=title, tags=manual_tags
        )
    except (MediaError, RuntimeError, OSError) as exc:
        record_upload("failed", services.media.provider_name)
        log.error("Upload failed for user %s: %s", user.user_id, exc)
        raise HTTPException(status_code=502, detail=f"Image upload failed: {exc}")
    finally:
        for path in staged:
            path.unlink(missing_ok=True)

    photo = await services.store.create(
        user_id=user.user_id,
        image_url=uploaded.url,
        thumbnail_url=uploaded.thumbnail_url,
        original_url=uploaded.original_url,
        provider=uploaded.provider,
        title=title,
        description=description.strip(),
        category=category,
        metadata={**uploaded.metadata, "extra_urls": uploaded.extra_urls},
        tags=manual_tags,
    )
    record_upload("success", uploaded.provider)

    job_id = None
    if enable_auto_tagging:
        image_path = uploaded.metadata.get("path") if uploaded.provider == "local" else None
        try:
            handle = await services.enqueue_tagging(photo, image_path=image_path)
            job_id = handle.id
        except RedisError as exc:
            # the photo is stored; tagging can be re-enqueued later
            log.error("Could not enqueue tagging for photo %s: %s", photo.id, exc)

    return UploadOut(
        photo=to_photo_out(photo, await services.store.tag_names(photo.id)),
        urls=uploaded.to_dict(),
        tagging_queued=job_id is not None,
        job_id=job_id,
    )


@router.get("", response_model=List[PhotoOut])
async def list_photos(
    response: Response,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[AquariumType] = None,
    user_id: Optional[str] = None,
    vision_status: Optional[VisionStatus] = None,
    user: Optional[AuthUser] = Depends(optional_user),
    services: Services = Depends(get_services),
):
    query = Photo.all()
    if not (user and user.is_admin):
        visible = Q(is_public=True)
        if user:
            visible |= Q(user_id=user.user_id)
        query = query.filter(visible)
    if category:
        query = query.filter(category=category)
    if user_id:
        query = query.filter(user_id=user_id)
    if vision_status:
        query = query.filter(vision_status=vision_status)

    total = await query.count()
    photos = await query.order_by("-created_at").offset((page - 1) * limit).limit(limit)
    tags = await services.store.tags_by_photo([p.id for p in photos])
    response.headers["X-Total-Count"] = str(total)
    response.headers["X-Total-Pages"] = str(math.ceil(total / limit) if total else 0)
    return [to_photo_out(p, tags.get(str(p.id), [])) for p in photos]


@router.get("/events")
async def photo_events(
    request: Request,
    user: AuthUser = Depends(require_user),
    services: Services = Depends(get_services),
):
    """Server-sent events with the caller's tagging status changes."""

    async def stream():
        async with services.feed.subscribe(user.user_id) as sub:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                event = await sub.get(timeout=SSE_KEEPALIVE_SECONDS)
                if event is None:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: status\ndata: {json.dumps(event.to_dict())}\n\n"

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{photo_id}", response_model=PhotoOut)
async def get_photo(
    photo_id: UUID,
    user: Optional[AuthUser] = Depends(optional_user),
    services: Services = Depends(get_services),
):
    photo = await _get_photo(services, photo_id)
    if not _can_view(photo, user):
        raise HTTPException(status_code=404, detail="Photo not found")
    await services.store.increment_views(photo.id)
    photo.views += 1
    variants = services.media.get_image_variants(photo.image_url).to_dict()
    return to_photo_out(photo, await services.store.tag_names(photo.id), variants)


@router.put("/{photo_id}", response_model=PhotoOut)
async def update_photo(
    photo_id: UUID,
    body: PhotoUpdate,
    user: AuthUser = Depends(require_user),
    services: Services = Depends(get_services),
):
    photo = await _get_photo(services, photo_id)
    if photo.user_id != user.user_id:
        raise HTTPException(status_code=403, detail="Not authorized to update this photo")

    changes = body.model_dump(exclude_unset=True, exclude={"tags"})
    if changes:
        photo.update_from_dict(changes)
        await photo.save(update_fields=list(changes))
    if body.tags is not None:
        await services.store.set_tags(photo.id, body.tags)
    return to_photo_out(photo, await services.store.tag_names(photo.id))


@router.delete("/{photo_id}", response_model=DeleteOut)
async def delete_photo(
    photo_id: UUID,
    user: AuthUser = Depends(require_user),
    services: Services = Depends(get_services),
):
    photo = await _get_photo(services, photo_id)
    if photo.user_id != user.user_id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Not authorized to delete this photo")
    result = await services.store.delete(photo, services.media)
    log.info("Photo %s deleted by %s (storage: %s)", photo_id, user.user_id, result.outcome.value)
    return DeleteOut(deleted=True, storage=result.to_dict())


@router.post("/{photo_id}/like", response_model=LikeOut)
async def toggle_like(
    photo_id: UUID,
    user: AuthUser = Depends(require_user),
    services: Services = Depends(get_services),
):
    photo = await _get_photo(services, photo_id)
    liked, count = await services.store.toggle_like(photo.id, user.user_id)
    return LikeOut(liked=liked, likes_count=count)


@router.get("/{photo_id}/tagging", response_model=TaggingStatusOut)
async def tagging_status(
    photo_id: UUID,
    user: Optional[AuthUser] = Depends(optional_user),
    services: Services = Depends(get_services),
):
    photo = await _get_photo(services, photo_id)
    if not _can_view(photo, user):
        raise HTTPException(status_code=404, detail="Photo not found")
    return TaggingStatusOut(
        photo_id=photo.id,
        status=photo.vision_status,
        started_at=photo.vision_started_at,
        completed_at=photo.vision_completed_at,
        error=photo.vision_error,
        model=photo.vision_model,
        processing_ms=photo.vision_processing_ms,
        vision_tags=photo.vision_tags or [],
        tags=await services.store.tag_names(photo.id),
    )
