import os
import time

import psutil
from fastapi import APIRouter, Depends
from tortoise import Tortoise
from tortoise.exceptions import BaseORMException

from aquaforum.core.deps import get_services
from aquaforum.services.registry import Services

router = APIRouter(prefix="/ops", tags=["ops"])

# Store startup time for uptime calculation
startup_time = time.time()


@router.get("/db-health")
async def db_health():
    """Simple database health check using Tortoise ORM"""
    try:
        await Tortoise.get_connection("default").execute_query("SELECT 1")
        return {"db_ok": True}
    except (BaseORMException, OSError) as e:
        return {"db_ok": False, "error": str(e)}


@router.get("/queue")
async def queue_health(services: Services = Depends(get_services)):
    if services.queue is None:
        return {"backend": None, "stats": None}
    stats = await services.queue.stats()
    return {"backend": services.queue.backend, "stats": stats.to_dict()}


@router.get("/vision-health")
async def vision_health(services: Services = Depends(get_services)):
    return {
        "vision": await services.vision.health_check(),
        "text": await services.text_tagging.health_check(),
    }


@router.get("/media-health")
async def media_health(services: Services = Depends(get_services)):
    return await services.media.check_status()


@router.get("/runtime")
async def runtime():
    """Process uptime and host memory for dashboards."""
    memory = psutil.virtual_memory()
    return {
        "uptime_seconds": round(time.time() - startup_time, 2),
        "memory_usage_percent": memory.percent,
        "memory_available_mb": round(memory.available / 1024 / 1024, 2),
        "process_id": os.getpid(),
        "timestamp": time.time(),
    }
