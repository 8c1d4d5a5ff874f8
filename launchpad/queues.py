"""Redis Streams job queues with retry bookkeeping.

Each queue is a stream read through one consumer group. The job record itself
lives in ``job:{id}`` so attempts and terminal state survive re-delivery:

    build:queue          stream of {"data": {"job_id": ...}}
    build:queue:delayed  sorted set of job ids scored by due time
    build:queue:dead     stream of dead jobs with their last error

Delivery is at-least-once: an entry left pending by a crashed worker is
re-delivered by ``reclaim_stale``.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import time
from typing import TYPE_CHECKING, Any
import uuid

from pydantic import BaseModel
from redis.exceptions import ResponseError, WatchError
import structlog

from .contracts.jobs import Job, JobStatus, JobType

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from .config import Settings

logger = structlog.get_logger(__name__)

BUILD_QUEUE = "build:queue"
DEPLOY_QUEUE = "deploy:queue"
MARKETING_QUEUE = "marketing:queue"

# Consumer group name (shared across all workers)
WORKER_GROUP = "launchpad-workers"

# Job retention TTL in seconds (7 days)
JOB_TTL_SECONDS = 7 * 24 * 60 * 60


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


@dataclass(frozen=True)
class QueueConfig:
    name: str
    job_type: JobType
    max_attempts: int = 1
    backoff_seconds: float = 0.0
    timeout_seconds: float = 300.0

    @property
    def delayed_key(self) -> str:
        return f"{self.name}:delayed"

    @property
    def dead_key(self) -> str:
        return f"{self.name}:dead"

    def backoff_for(self, attempts: int) -> float:
        """Delay before re-delivery after the ``attempts``-th failure."""
        return self.backoff_seconds * (2 ** max(attempts - 1, 0))


def build_queue_config(settings: Settings) -> QueueConfig:
    return QueueConfig(
        name=BUILD_QUEUE,
        job_type=JobType.BUILD,
        max_attempts=settings.build_max_attempts,
        backoff_seconds=settings.build_backoff_seconds,
        timeout_seconds=settings.build_timeout_seconds,
    )


def deploy_queue_config(settings: Settings) -> QueueConfig:
    return QueueConfig(
        name=DEPLOY_QUEUE,
        job_type=JobType.DEPLOY,
        max_attempts=settings.deploy_max_attempts,
        backoff_seconds=settings.deploy_backoff_seconds,
        timeout_seconds=settings.deploy_timeout_seconds,
    )


@dataclass
class ClaimedJob:
    """A job read from the stream and not yet acknowledged."""

    entry_id: str
    job: Job


class JobQueue:
    """Durable at-least-once queue for one job type."""

    def __init__(
        self,
        redis: Redis,
        config: QueueConfig,
        group: str = WORKER_GROUP,
        clock=time.time,
    ):
        self.redis = redis
        self.config = config
        self.group = group
        self._clock = clock

    @property
    def name(self) -> str:
        return self.config.name

    async def ensure_group(self) -> None:
        """Create the consumer group if it doesn't exist."""
        try:
            await self.redis.xgroup_create(self.name, self.group, id="0", mkstream=True)
            logger.info("consumer_group_created", queue=self.name, group=self.group)
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                logger.debug("consumer_group_exists", queue=self.name, group=self.group)
            else:
                raise

    async def enqueue(self, payload: BaseModel | dict[str, Any]) -> str:
        data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
        job = Job(
            type=self.config.job_type,
            payload=data,
            max_attempts=self.config.max_attempts,
            timeout=self.config.timeout_seconds,
        )
        await self._save(job)
        await self._push(job.id)
        logger.info("job_enqueued", queue=self.name, job_id=job.id, project_id=job.project_id)
        return job.id

    async def get_job(self, job_id: str) -> Job | None:
        raw = await self.redis.get(job_key(job_id))
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    async def promote_due(self) -> int:
        """Move delayed jobs whose backoff has elapsed back onto the stream."""
        due = await self.redis.zrangebyscore(self.config.delayed_key, "-inf", self._clock())
        promoted = 0
        for job_id in due:
            # zrem decides the winner when several workers promote at once
            if await self.redis.zrem(self.config.delayed_key, job_id):
                await self._set_status(job_id, JobStatus.QUEUED)
                await self._push(job_id)
                promoted += 1
        if promoted:
            logger.debug("delayed_jobs_promoted", queue=self.name, count=promoted)
        return promoted

    async def claim(self, consumer: str, block_ms: int | None = 5000) -> ClaimedJob | None:
        """Read one new entry for ``consumer``. Returns None when idle."""
        await self.promote_due()
        messages = await self.redis.xreadgroup(
            groupname=self.group,
            consumername=consumer,
            streams={self.name: ">"},
            count=1,
            block=block_ms,
        )
        if not messages:
            return None

        for _stream_name, entries in messages:
            for entry_id, fields in entries:
                return await self._load_claim(entry_id, fields)
        return None

    async def reclaim_stale(self, consumer: str, min_idle_ms: int, count: int = 10) -> list[ClaimedJob]:
        """Take over entries another consumer read but never acknowledged."""
        result = await self.redis.xautoclaim(
            self.name, self.group, consumer, min_idle_time=min_idle_ms, start_id="0-0", count=count
        )
        claimed = []
        for entry_id, fields in result[1]:
            if not fields:
                continue
            job = await self._load_claim(entry_id, fields)
            if job is not None:
                logger.warning("stale_job_reclaimed", queue=self.name, job_id=job.job.id)
                claimed.append(job)
        return claimed

    async def ack(self, claimed: ClaimedJob) -> None:
        await self._remove_entry(claimed.entry_id)
        claimed.job.status = JobStatus.COMPLETED
        claimed.job.last_error = None
        await self._save(claimed.job)
        logger.debug("job_acked", queue=self.name, job_id=claimed.job.id)

    async def fail(self, claimed: ClaimedJob, error: BaseException, retryable: bool = True) -> JobStatus:
        """Record a failed attempt and schedule a retry or dead-letter the job."""
        job = claimed.job
        job.attempts += 1
        job.last_error = str(error) or type(error).__name__
        await self._remove_entry(claimed.entry_id)

        if retryable and job.attempts < job.max_attempts:
            delay = self.config.backoff_for(job.attempts)
            await self.redis.zadd(self.config.delayed_key, {job.id: self._clock() + delay})
            job.status = JobStatus.DELAYED
            logger.warning(
                "job_retry_scheduled",
                queue=self.name,
                job_id=job.id,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                delay=delay,
                error=job.last_error,
            )
        else:
            await self.redis.xadd(
                self.config.dead_key,
                {"data": json.dumps({"job_id": job.id, "attempts": job.attempts, "error": job.last_error})},
            )
            job.status = JobStatus.DEAD
            logger.error(
                "job_dead",
                queue=self.name,
                job_id=job.id,
                attempts=job.attempts,
                error=job.last_error,
                error_type=type(error).__name__,
            )

        await self._save(job)
        return job.status

    async def defer(self, claimed: ClaimedJob, delay: float) -> None:
        """Re-deliver later without consuming an attempt."""
        await self._remove_entry(claimed.entry_id)
        await self.redis.zadd(self.config.delayed_key, {claimed.job.id: self._clock() + delay})
        claimed.job.status = JobStatus.DELAYED
        await self._save(claimed.job)
        logger.info("job_deferred", queue=self.name, job_id=claimed.job.id, delay=delay)

    async def _load_claim(self, entry_id: str, fields: dict[str, str]) -> ClaimedJob | None:
        try:
            job_id = json.loads(fields.get("data", "{}"))["job_id"]
        except (json.JSONDecodeError, KeyError) as e:
            logger.error("job_entry_parse_failed", queue=self.name, entry_id=entry_id, error=str(e))
            await self._remove_entry(entry_id)
            return None

        job = await self.get_job(job_id)
        if job is None:
            logger.error("job_record_missing", queue=self.name, entry_id=entry_id, job_id=job_id)
            await self._remove_entry(entry_id)
            return None

        job.status = JobStatus.ACTIVE
        await self._save(job)
        return ClaimedJob(entry_id=entry_id, job=job)

    async def _push(self, job_id: str) -> None:
        await self.redis.xadd(self.name, {"data": json.dumps({"job_id": job_id})})

    async def _remove_entry(self, entry_id: str) -> None:
        await self.redis.xack(self.name, self.group, entry_id)
        await self.redis.xdel(self.name, entry_id)

    async def _save(self, job: Job) -> None:
        await self.redis.set(job_key(job.id), job.model_dump_json(), ex=JOB_TTL_SECONDS)

    async def _set_status(self, job_id: str, status: JobStatus) -> None:
        job = await self.get_job(job_id)
        if job is not None:
            job.status = status
            await self._save(job)


class ProjectLock:
    """Per-project advisory lock held for the duration of a build or deploy job."""

    def __init__(self, redis: Redis, ttl_seconds: float):
        self.redis = redis
        self.ttl_ms = int(ttl_seconds * 1000)

    @staticmethod
    def key(project_id: str) -> str:
        return f"lock:project:{project_id}"

    async def acquire(self, project_id: str) -> str | None:
        """Return an ownership token, or None when another job holds the lock."""
        token = uuid.uuid4().hex
        acquired = await self.redis.set(self.key(project_id), token, nx=True, px=self.ttl_ms)
        return token if acquired else None

    async def release(self, project_id: str, token: str) -> bool:
        """Delete the lock only if ``token`` still owns it."""
        key = self.key(project_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current != token:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
                return True
            except WatchError:
                return False


MARKETING_QUEUE_CONFIG = QueueConfig(name=MARKETING_QUEUE, job_type=JobType.MARKETING)
