import asyncio

import pytest
import structlog

from launchpad.contracts.jobs import DeployJobPayload, JobStatus, JobType
from launchpad.errors import NonRetryableJobError
from launchpad.queues import JobQueue, ProjectLock, QueueConfig
from launchpad.workers.runner import QueueRunner, default_reclaim_idle_ms, lock_ttl_for


class RecordingHandler:
    def __init__(self, error: BaseException | None = None, delay: float = 0):
        self.error = error
        self.delay = delay
        self.jobs = []
        self.context = []

    async def __call__(self, job):
        self.jobs.append(job)
        self.context.append(structlog.contextvars.get_contextvars())
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error


@pytest.fixture
async def queue(redis_client):
    config = QueueConfig(name="deploy:queue", job_type=JobType.DEPLOY, max_attempts=2, timeout_seconds=5)
    queue = JobQueue(redis_client, config)
    await queue.ensure_group()
    return queue


@pytest.fixture
def lock(redis_client):
    return ProjectLock(redis_client, ttl_seconds=60)


async def claim_one(queue, project_id="project-1"):
    await queue.enqueue(DeployJobPayload(project_id=project_id, user_id="user-1", correlation_id="corr-1"))
    return await queue.claim("test-consumer", block_ms=None)


@pytest.mark.asyncio
async def test_successful_job_is_acked_and_lock_released(queue, lock, redis_client):
    handler = RecordingHandler()
    runner = QueueRunner(queue, handler, lock=lock)
    claimed = await claim_one(queue)

    status = await runner.process(claimed)

    assert status is JobStatus.COMPLETED
    assert (await queue.get_job(claimed.job.id)).status is JobStatus.COMPLETED
    assert await redis_client.get(ProjectLock.key("project-1")) is None

    context = handler.context[0]
    assert context["job_id"] == claimed.job.id
    assert context["project_id"] == "project-1"
    assert context["correlation_id"] == "corr-1"
    assert context["attempt"] == 1
    assert "job_id" not in structlog.contextvars.get_contextvars()


@pytest.mark.asyncio
async def test_failed_job_is_scheduled_for_retry(queue, lock):
    runner = QueueRunner(queue, RecordingHandler(error=RuntimeError("platform down")), lock=lock)
    claimed = await claim_one(queue)

    status = await runner.process(claimed)

    assert status is JobStatus.DELAYED
    job = await queue.get_job(claimed.job.id)
    assert job.attempts == 1
    assert job.last_error == "platform down"


@pytest.mark.asyncio
async def test_non_retryable_failure_goes_straight_to_dead_letter(queue, redis_client):
    runner = QueueRunner(queue, RecordingHandler(error=NonRetryableJobError("bad payload")))
    claimed = await claim_one(queue)

    status = await runner.process(claimed)

    assert status is JobStatus.DEAD
    assert await redis_client.xlen(queue.config.dead_key) == 1


@pytest.mark.asyncio
async def test_job_timeout_counts_as_failure(redis_client):
    config = QueueConfig(name="build:queue", job_type=JobType.BUILD, max_attempts=1, timeout_seconds=0.05)
    queue = JobQueue(redis_client, config)
    await queue.ensure_group()
    runner = QueueRunner(queue, RecordingHandler(delay=1))
    claimed = await claim_one(queue)

    status = await runner.process(claimed)

    assert status is JobStatus.DEAD
    assert "timeout" in (await queue.get_job(claimed.job.id)).last_error


@pytest.mark.asyncio
async def test_locked_project_defers_without_consuming_attempt(queue, lock):
    handler = RecordingHandler()
    runner = QueueRunner(queue, handler, lock=lock)
    held = await lock.acquire("project-1")
    claimed = await claim_one(queue)

    status = await runner.process(claimed)

    assert status is JobStatus.DELAYED
    assert handler.jobs == []
    job = await queue.get_job(claimed.job.id)
    assert job.attempts == 0
    assert job.status is JobStatus.DELAYED
    # the other job's lock is untouched
    assert await lock.release("project-1", held)


@pytest.mark.asyncio
async def test_run_processes_jobs_until_stopped(queue, lock):
    runner = None

    async def handler(job):
        runner.request_stop()

    runner = QueueRunner(queue, handler, lock=lock, concurrency=1, block_ms=10)
    job_id = await queue.enqueue(DeployJobPayload(project_id="project-1", user_id="user-1"))

    await asyncio.wait_for(runner.run(), timeout=5)

    assert runner.stopping
    assert (await queue.get_job(job_id)).status is JobStatus.COMPLETED


def test_lock_ttl_covers_job_timeout():
    queue = JobQueue(None, QueueConfig(name="deploy:queue", job_type=JobType.DEPLOY, timeout_seconds=5))

    assert lock_ttl_for(queue) == 65
    assert default_reclaim_idle_ms(queue) == 65_000
