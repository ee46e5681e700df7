import logging

from fastapi import APIRouter, Depends, HTTPException

from aquaforum.core.deps import get_services
from aquaforum.core.identity import AuthUser, require_admin
from aquaforum.services.registry import Services
from aquaforum.services.tag_index import normalize_tag

admin_api = APIRouter(prefix="/admin", tags=["admin"])
log = logging.getLogger("aquaforum.routers.admin")


@admin_api.delete("/tags/{name}")
async def delete_tag(
    name: str,
    admin: AuthUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Detach a tag from every photo, then drop it from the usage index."""
    key = normalize_tag(name)
    if not key or await services.tag_index.get(key) is None:
        raise HTTPException(status_code=404, detail="Tag not found")
    detached = await services.store.remove_tag_everywhere(key)
    await services.tag_index.delete(key)
    log.info("Admin %s deleted tag %s (%s photos)", admin.user_id, key, detached)
    return {"deleted": key, "photos_updated": detached}


@admin_api.post("/queue/cleanup")
async def cleanup_queue(
    admin: AuthUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    if services.queue is None:
        raise HTTPException(status_code=503, detail="Job queue not available")
    removed = await services.queue.cleanup()
    stats = await services.queue.stats()
    return {"removed": removed, "stats": stats.to_dict()}
