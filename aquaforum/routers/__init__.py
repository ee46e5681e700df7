from fastapi import APIRouter


def build_router() -> APIRouter:
    from .admin import admin_api
    from .health import router as health_router
    from .photos import router as photos_router
    from .tags import router as tags_router

    router = APIRouter()
    router.include_router(photos_router)
    router.include_router(tags_router)
    router.include_router(admin_api)
    router.include_router(health_router)
    return router


router = build_router()
