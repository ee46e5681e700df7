"""
Entry points executed inside rq worker processes.

rq calls plain functions, so each job opens its own event loop, database
connection and service container, and closes them before returning.
Raising lets rq apply the Retry policy the job was enqueued with.
"""

import asyncio
import logging
from typing import Any, Dict

from redis import Redis
from rq import Worker
from rq.worker_pool import WorkerPool

from aquaforum.config import settings
from aquaforum.db import close_db, init_db
from aquaforum.services.queue import TaggingJob
from aquaforum.services.registry import Services

log = logging.getLogger("aquaforum.jobs.rq")


async def _run(job: TaggingJob) -> Dict[str, Any]:
    await init_db()
    services = Services.from_settings(settings, queue_enabled=False)
    try:
        await services.start()
        return await services.worker.process(job)
    finally:
        await services.close()
        await close_db()


def run_tagging_job(payload: Dict[str, Any]) -> Dict[str, Any]:
    job = TaggingJob.from_payload(payload)
    log.info("rq picked up %s", job.id)
    return asyncio.run(_run(job))


def start_worker(burst: bool = False) -> None:
    connection = Redis.from_url(settings.REDIS_URL)
    queues = [settings.VISION_QUEUE_NAME]
    concurrency = max(1, settings.VISION_QUEUE_CONCURRENCY)
    log.info("Starting %s rq worker(s) on %s", concurrency, queues)
    if concurrency == 1:
        Worker(queues, connection=connection).work(with_scheduler=True, burst=burst)
        return
    pool = WorkerPool(queues, connection=connection, num_workers=concurrency)
    pool.start(burst=burst)
