"""Concurrent consumer loop shared by the build and deploy workers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import os
from typing import Any

import structlog

from ..contracts.jobs import Job, JobStatus
from ..errors import JobTimeoutError, NonRetryableJobError
from ..logging_config import bind_job_context, clear_job_context, set_correlation_id
from ..queues import ClaimedJob, JobQueue, ProjectLock

logger = structlog.get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]

# Delay before a job whose project is locked is offered again
LOCK_RETRY_DELAY_SECONDS = 5.0

# Extra lock lifetime beyond the job timeout
LOCK_TTL_MARGIN_SECONDS = 60.0


class QueueRunner:
    """Pulls jobs from one queue and runs up to ``concurrency`` of them at once.

    Each job holds the per-project lock while it runs and is bounded by its own
    timeout. Success acknowledges the job; failure hands it back to the queue's
    retry policy.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        lock: ProjectLock | None = None,
        concurrency: int = 1,
        consumer: str | None = None,
        block_ms: int = 5000,
        lock_retry_delay: float = LOCK_RETRY_DELAY_SECONDS,
        reclaim_idle_ms: int | None = None,
    ):
        self.queue = queue
        self.handler = handler
        self.lock = lock
        self.concurrency = concurrency
        self.consumer = consumer or f"{queue.config.job_type.value}-worker-{os.getpid()}"
        self.block_ms = block_ms
        self.lock_retry_delay = lock_retry_delay
        self.reclaim_idle_ms = reclaim_idle_ms
        self._stopping = False

    def request_stop(self) -> None:
        self._stopping = True

    @property
    def stopping(self) -> bool:
        return self._stopping

    async def process(self, claimed: ClaimedJob) -> JobStatus:
        """Run one claimed job to completion and settle it with the queue."""
        job = claimed.job
        project_id = job.project_id
        bind_job_context(job.id, project_id, queue=self.queue.name, attempt=job.attempts + 1)
        if job.payload.get("correlation_id"):
            set_correlation_id(job.payload["correlation_id"])

        token = None
        try:
            if self.lock is not None and project_id:
                token = await self.lock.acquire(project_id)
                if token is None:
                    logger.info("project_locked_job_deferred", job_id=job.id, project_id=project_id)
                    await self.queue.defer(claimed, self.lock_retry_delay)
                    return JobStatus.DELAYED

            logger.info("job_started", job_id=job.id, job_type=job.type.value)
            try:
                async with asyncio.timeout(job.timeout) as deadline:
                    await self.handler(job)
            except TimeoutError as e:
                if not deadline.expired():
                    raise
                error = JobTimeoutError(f"Job {job.id} exceeded its {job.timeout:.0f}s timeout")
                logger.error("job_timeout", job_id=job.id, timeout=job.timeout)
                raise error from e
        except NonRetryableJobError as e:
            logger.error("job_failed", job_id=job.id, error=str(e), error_type=type(e).__name__, retryable=False)
            return await self.queue.fail(claimed, e, retryable=False)
        except Exception as e:
            logger.error(
                "job_failed",
                job_id=job.id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return await self.queue.fail(claimed, e)
        else:
            await self.queue.ack(claimed)
            logger.info("job_completed", job_id=job.id)
            return JobStatus.COMPLETED
        finally:
            if token is not None:
                await self.lock.release(project_id, token)
            clear_job_context()

    async def _next(self) -> ClaimedJob | None:
        claimed = await self.queue.claim(self.consumer, block_ms=self.block_ms)
        if claimed is None and self.reclaim_idle_ms is not None:
            stale = await self.queue.reclaim_stale(self.consumer, self.reclaim_idle_ms, count=1)
            claimed = stale[0] if stale else None
        return claimed

    async def _run_one(self, claimed: ClaimedJob, slots: asyncio.Semaphore) -> None:
        try:
            await self.process(claimed)
        finally:
            slots.release()

    async def run(self) -> None:
        """Consume until :meth:`request_stop` is called, then drain running jobs."""
        await self.queue.ensure_group()
        slots = asyncio.Semaphore(self.concurrency)
        running: set[asyncio.Task] = set()
        logger.info(
            "queue_runner_started",
            queue=self.queue.name,
            consumer=self.consumer,
            concurrency=self.concurrency,
        )

        try:
            while not self._stopping:
                await slots.acquire()
                try:
                    claimed = None if self._stopping else await self._next()
                except asyncio.CancelledError:
                    slots.release()
                    raise
                except Exception as e:
                    slots.release()
                    logger.error("worker_loop_error", error=str(e), error_type=type(e).__name__)
                    await asyncio.sleep(1)
                    continue

                if claimed is None:
                    slots.release()
                    continue

                task = asyncio.create_task(self._run_one(claimed, slots))
                running.add(task)
                task.add_done_callback(running.discard)
        finally:
            if running:
                logger.info("queue_runner_draining", queue=self.queue.name, running=len(running))
                await asyncio.gather(*running, return_exceptions=True)
            logger.info("queue_runner_stopped", queue=self.queue.name)


def lock_ttl_for(queue: JobQueue) -> float:
    return queue.config.timeout_seconds + LOCK_TTL_MARGIN_SECONDS


def default_reclaim_idle_ms(queue: JobQueue) -> int:
    """Entries idle longer than a job could possibly run belong to a dead consumer."""
    return int(lock_ttl_for(queue) * 1000)
