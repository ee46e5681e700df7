"""
Tagging job queue.

JOBS_BACKEND=inline runs jobs on asyncio tasks inside the API process;
JOBS_BACKEND=rq hands them to Redis for `start_worker.py` processes.
Both key jobs by ``vision-<photo id>`` so re-submitting a photo that is
already waiting, delayed or running returns the existing job.
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from redis import Redis
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job, JobStatus

log = logging.getLogger("aquaforum.jobs")

PRIORITY_RANK = {"high": 1, "normal": 10}
COMPLETED_MAX_AGE = timedelta(hours=24)
FAILED_MAX_AGE = timedelta(days=7)
RQ_TASK = "aquaforum.workers.rq_tasks.run_tagging_job"
ENQUEUE_GUARD_PREFIX = "aquaforum:enqueue-guard:"
ENQUEUE_GUARD_SECONDS = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TaggingJob:
    photo_id: str
    user_id: Optional[str] = None
    image_path: Optional[str] = None
    image_url: Optional[str] = None
    priority: str = "normal"
    delay: float = 0.0
    attempts_made: int = 0
    timeout: float = 120.0

    @property
    def id(self) -> str:
        return f"vision-{self.photo_id}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "photoId": self.photo_id,
            "imagePath": self.image_path,
            "imageUrl": self.image_url,
            "userId": self.user_id,
            "priority": self.priority,
            "delay": self.delay,
            "timeout": self.timeout,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "TaggingJob":
        return cls(
            photo_id=str(data["photoId"]),
            user_id=data.get("userId"),
            image_path=data.get("imagePath"),
            image_url=data.get("imageUrl"),
            priority=data.get("priority") or "normal",
            delay=float(data.get("delay") or 0),
            timeout=float(data.get("timeout") or 120.0),
        )


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobRecord:
    job_id: str
    state: JobState
    attempts: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    finished_at: Optional[datetime] = None


@dataclass
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def to_dict(self) -> Dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
        }


class JobHandle:
    """Returned by enqueue; ``wait()`` resolves to the job's final JobRecord."""

    def __init__(self, job_id: str, waiter: Callable[[], Awaitable[JobRecord]], duplicate: bool = False):
        self.id = job_id
        self.duplicate = duplicate
        self._waiter = waiter

    async def wait(self, timeout: Optional[float] = None) -> JobRecord:
        return await asyncio.wait_for(self._waiter(), timeout)


JobHandler = Callable[[TaggingJob], Awaitable[Dict[str, Any]]]


class JobQueue(ABC):
    backend = "base"

    @abstractmethod
    async def enqueue(self, job: TaggingJob) -> JobHandle:
        ...

    @abstractmethod
    async def stats(self) -> QueueStats:
        ...

    @abstractmethod
    async def cleanup(self) -> int:
        ...

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None


class InlineJobQueue(JobQueue):
    """
    asyncio priority queue drained by ``concurrency`` worker tasks.

    A job whose handler raises is re-delayed by ``backoff_base * 2**(n-1)``
    seconds until ``attempts`` runs have been made, then recorded as failed.
    """

    backend = "inline"

    def __init__(
        self,
        handler: JobHandler,
        *,
        concurrency: int = 2,
        attempts: int = 3,
        backoff_base: float = 5.0,
        keep_completed: int = 100,
        keep_failed: int = 50,
    ):
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.attempts = max(1, attempts)
        self.backoff_base = backoff_base
        self._queue: "asyncio.PriorityQueue" = asyncio.PriorityQueue()
        self._seq = itertools.count()
        self._futures: Dict[str, asyncio.Future] = {}
        self._states: Dict[str, JobState] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._completed: Deque[JobRecord] = deque(maxlen=keep_completed)
        self._failed: Deque[JobRecord] = deque(maxlen=keep_failed)
        self._workers: List[asyncio.Task] = []

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"tagging-worker-{n}")
            for n in range(self.concurrency)
        ]
        log.info("Inline tagging queue started with %s workers", self.concurrency)

    async def enqueue(self, job: TaggingJob) -> JobHandle:
        existing = self._futures.get(job.id)
        if existing is not None:
            log.info("Job %s already %s; not enqueued again", job.id, self._states.get(job.id, JobState.WAITING).value)
            return JobHandle(job.id, lambda: asyncio.shield(existing), duplicate=True)

        future = asyncio.get_running_loop().create_future()
        self._futures[job.id] = future
        if job.delay > 0:
            self._schedule(job, job.delay)
        else:
            self._put(job)
        log.info("Added photo %s to tagging queue (priority=%s)", job.photo_id, job.priority)
        return JobHandle(job.id, lambda: asyncio.shield(future))

    def _put(self, job: TaggingJob) -> None:
        self._states[job.id] = JobState.WAITING
        rank = PRIORITY_RANK.get(job.priority, PRIORITY_RANK["normal"])
        self._queue.put_nowait((rank, next(self._seq), job))

    def _schedule(self, job: TaggingJob, delay: float) -> None:
        self._states[job.id] = JobState.DELAYED
        self._timers[job.id] = asyncio.create_task(self._release_after(job, delay))

    async def _release_after(self, job: TaggingJob, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(job.id, None)
        self._put(job)

    async def _worker(self, n: int) -> None:
        while True:
            _, _, job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: TaggingJob) -> None:
        self._states[job.id] = JobState.ACTIVE
        job.attempts_made += 1
        try:
            result = await self.handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if job.attempts_made < self.attempts:
                delay = self.backoff_base * (2 ** (job.attempts_made - 1))
                log.warning(
                    "Job %s failed (attempt %s/%s): %s; retrying in %.1fs",
                    job.id, job.attempts_made, self.attempts, exc, delay,
                )
                self._schedule(job, delay)
                return
            log.error("Job %s failed after %s attempts: %s", job.id, job.attempts_made, exc)
            self._finish(job, JobState.FAILED, error=str(exc))
            return
        log.info("Job %s completed: %s", job.id, result)
        self._finish(job, JobState.COMPLETED, result=result)

    def _finish(self, job: TaggingJob, state: JobState, *, result=None, error=None) -> None:
        record = JobRecord(job.id, state, job.attempts_made, result, error, utcnow())
        (self._completed if state == JobState.COMPLETED else self._failed).append(record)
        self._states.pop(job.id, None)
        future = self._futures.pop(job.id, None)
        if future is not None and not future.done():
            future.set_result(record)

    async def stats(self) -> QueueStats:
        states = list(self._states.values())
        return QueueStats(
            waiting=states.count(JobState.WAITING),
            active=states.count(JobState.ACTIVE),
            delayed=states.count(JobState.DELAYED),
            completed=len(self._completed),
            failed=len(self._failed),
        )

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """Drop completed records older than 24h and failed ones older than 7 days."""
        now = now or utcnow()
        removed = 0
        for records, max_age in ((self._completed, COMPLETED_MAX_AGE), (self._failed, FAILED_MAX_AGE)):
            keep = [r for r in records if r.finished_at and now - r.finished_at < max_age]
            removed += len(records) - len(keep)
            records.clear()
            records.extend(keep)
        log.info("Tagging queue cleanup removed %s records", removed)
        return removed

    async def close(self) -> None:
        tasks = self._workers + list(self._timers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._timers.clear()
        for future in self._futures.values():
            if not future.done():
                future.cancel()
        self._futures.clear()
        self._states.clear()


_RQ_STATES = {
    JobStatus.QUEUED: JobState.WAITING,
    JobStatus.STARTED: JobState.ACTIVE,
    JobStatus.DEFERRED: JobState.DELAYED,
    JobStatus.SCHEDULED: JobState.DELAYED,
    JobStatus.FINISHED: JobState.COMPLETED,
    JobStatus.FAILED: JobState.FAILED,
    JobStatus.STOPPED: JobState.FAILED,
    JobStatus.CANCELED: JobState.FAILED,
}
_RQ_LIVE = {JobStatus.QUEUED, JobStatus.STARTED, JobStatus.DEFERRED, JobStatus.SCHEDULED}


class RQJobQueue(JobQueue):
    """Durable queue on Redis; jobs run in `rq` worker processes."""

    backend = "rq"

    def __init__(
        self,
        connection: Redis,
        *,
        name: str = "vision-processing",
        attempts: int = 3,
        backoff_base: float = 5.0,
        keep_completed: int = 100,
        keep_failed: int = 50,
        poll_interval: float = 0.5,
    ):
        self.connection = connection
        self.queue = Queue(name, connection=connection)
        self.attempts = max(1, attempts)
        self.backoff_base = backoff_base
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.poll_interval = poll_interval

    def _retry(self) -> Optional[Retry]:
        if self.attempts < 2:
            return None
        intervals = [max(1, int(self.backoff_base * 2 ** i)) for i in range(self.attempts - 1)]
        return Retry(max=self.attempts - 1, interval=intervals)

    def _fetch(self, job_id: str) -> Optional[Job]:
        try:
            return Job.fetch(job_id, connection=self.connection)
        except NoSuchJobError:
            return None

    def _enqueue_sync(self, job: TaggingJob):
        # SET NX makes the fetch-then-enqueue below single-writer per job id
        guard = ENQUEUE_GUARD_PREFIX + job.id
        if not self.connection.set(guard, "1", nx=True, ex=ENQUEUE_GUARD_SECONDS):
            return job.id, True
        try:
            return self._enqueue_unguarded(job)
        finally:
            self.connection.delete(guard)

    def _enqueue_unguarded(self, job: TaggingJob):
        existing = self._fetch(job.id)
        if existing is not None:
            if existing.get_status(refresh=True) in _RQ_LIVE:
                return existing.id, True
            # finished or failed earlier; a new job may reuse the id
            existing.delete()

        options = dict(
            job_id=job.id,
            retry=self._retry(),
            job_timeout=int(job.timeout) + 5,
            result_ttl=int(COMPLETED_MAX_AGE.total_seconds()),
            failure_ttl=int(FAILED_MAX_AGE.total_seconds()),
            description=f"vision tagging for photo {job.photo_id}",
        )
        if job.delay > 0:
            rq_job = self.queue.enqueue_in(timedelta(seconds=job.delay), RQ_TASK, job.to_payload(), **options)
        else:
            rq_job = self.queue.enqueue(RQ_TASK, job.to_payload(), at_front=job.priority == "high", **options)
        return rq_job.id, False

    async def enqueue(self, job: TaggingJob) -> JobHandle:
        job_id, duplicate = await asyncio.to_thread(self._enqueue_sync, job)
        if duplicate:
            log.info("Job %s already queued in rq; not enqueued again", job.id)
        else:
            log.info("Added photo %s to rq queue %s", job.photo_id, self.queue.name)
        return JobHandle(job_id, lambda: self._wait(job_id), duplicate=duplicate)

    def _record(self, job_id: str) -> Optional[JobRecord]:
        rq_job = self._fetch(job_id)
        if rq_job is None:
            return JobRecord(job_id, JobState.FAILED, error="Job expired or was removed")
        status = rq_job.get_status(refresh=True)
        if status in _RQ_LIVE:
            return None
        state = _RQ_STATES.get(status, JobState.FAILED)
        return JobRecord(
            job_id,
            state,
            result=rq_job.return_value() if state == JobState.COMPLETED else None,
            error=rq_job.exc_info if state == JobState.FAILED else None,
            finished_at=rq_job.ended_at,
        )

    async def _wait(self, job_id: str) -> JobRecord:
        while True:
            record = await asyncio.to_thread(self._record, job_id)
            if record is not None:
                return record
            await asyncio.sleep(self.poll_interval)

    def _stats_sync(self) -> QueueStats:
        return QueueStats(
            waiting=self.queue.count,
            active=self.queue.started_job_registry.count,
            completed=self.queue.finished_job_registry.count,
            failed=self.queue.failed_job_registry.count,
            delayed=self.queue.scheduled_job_registry.count + self.queue.deferred_job_registry.count,
        )

    async def stats(self) -> QueueStats:
        return await asyncio.to_thread(self._stats_sync)

    def _cleanup_sync(self) -> int:
        removed = 0
        for registry, keep in (
            (self.queue.finished_job_registry, self.keep_completed),
            (self.queue.failed_job_registry, self.keep_failed),
        ):
            registry.cleanup()
            # registry ids are ordered oldest first
            job_ids = registry.get_job_ids()
            for job_id in job_ids[: max(0, len(job_ids) - keep)]:
                registry.remove(job_id, delete_job=True)
                removed += 1
        return removed

    async def cleanup(self) -> int:
        removed = await asyncio.to_thread(self._cleanup_sync)
        log.info("rq queue cleanup removed %s jobs", removed)
        return removed

    async def close(self) -> None:
        await asyncio.to_thread(self.connection.close)


def build_queue(settings, handler: JobHandler) -> JobQueue:
    if settings.JOBS_BACKEND == "rq":
        if not settings.redis_enabled:
            raise RuntimeError("JOBS_BACKEND=rq requires REDIS_URL")
        log.info("Queue backend: RQ (%s)", settings.VISION_QUEUE_NAME)
        return RQJobQueue(
            Redis.from_url(settings.REDIS_URL),
            name=settings.VISION_QUEUE_NAME,
            attempts=settings.QUEUE_RETRY_ATTEMPTS,
            backoff_base=settings.QUEUE_RETRY_DELAY,
            keep_completed=settings.QUEUE_KEEP_COMPLETED,
            keep_failed=settings.QUEUE_KEEP_FAILED,
        )
    if settings.JOBS_BACKEND != "inline":
        log.warning("Unknown JOBS_BACKEND %s, using inline", settings.JOBS_BACKEND)
    log.info("Queue backend: inline")
    return InlineJobQueue(
        handler,
        concurrency=settings.VISION_QUEUE_CONCURRENCY,
        attempts=settings.QUEUE_RETRY_ATTEMPTS,
        backoff_base=settings.QUEUE_RETRY_DELAY,
        keep_completed=settings.QUEUE_KEEP_COMPLETED,
        keep_failed=settings.QUEUE_KEEP_FAILED,
    )
