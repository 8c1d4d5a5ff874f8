"""Build Worker: consumes build:queue and runs the build or iterate pipeline.

Run standalone: python -m launchpad.workers.build_worker
"""

from __future__ import annotations

import asyncio
import signal

from pydantic import ValidationError
import structlog

from ..codegen.context import ContextBuilder
from ..codegen.orchestrator import AppBuilder, BuildOutcome
from ..config import get_settings
from ..contracts.jobs import BuildJobPayload, Job
from ..errors import JobInterruptedError, NonRetryableJobError
from ..logging_config import setup_logging
from ..progress import ProgressBroadcaster, ProgressReporter
from ..queues import JobQueue, ProjectLock, build_queue_config
from ..services import build_services
from ..store import ProjectStore
from .runner import QueueRunner, default_reclaim_idle_ms, lock_ttl_for

logger = structlog.get_logger(__name__)

_runner: QueueRunner | None = None


def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    logger.info("shutdown_signal_received", signal=signum)
    if _runner is not None:
        _runner.request_stop()


class BuildWorker:
    def __init__(self, store: ProjectStore, broadcaster: ProgressBroadcaster, builder: AppBuilder):
        self.store = store
        self.broadcaster = broadcaster
        self.builder = builder

    async def handle(self, job: Job) -> BuildOutcome:
        try:
            payload = BuildJobPayload.model_validate(job.payload)
        except ValidationError as e:
            raise NonRetryableJobError(f"Invalid build payload: {e}") from e
        return await self.process(payload)

    async def process(self, payload: BuildJobPayload) -> BuildOutcome:
        """Run a first build when the project has no files, otherwise an iteration."""
        project_id = payload.project_id
        await self.store.get_project(project_id)

        reporter = ProgressReporter(self.broadcaster, project_id, store=self.store)
        logger.info("build_job_started", project_id=project_id, message_id=payload.message_id)
        try:
            await self.store.mark_building(project_id)
            await reporter.report(0, "initializing", "Starting build...")

            if await self.store.count_files(project_id) == 0:
                await reporter.report(5, "scaffolding", "Setting up project structure...")
                outcome = await self.builder.build(payload, reporter)
            else:
                await reporter.report(5, "analyzing", "Analyzing your request...")
                outcome = await self.builder.iterate(payload, reporter)

            await self.store.mark_ready(project_id)
            await reporter.report(100, "complete", "Build complete!")
        except asyncio.CancelledError:
            if not reporter.failed:
                await self.builder.record_failure(
                    payload, reporter, JobInterruptedError("Build was interrupted before it finished")
                )
            raise
        except Exception as e:
            # the pipelines record their own failures
            if not reporter.failed:
                await self.builder.record_failure(payload, reporter, e)
            raise

        logger.info(
            "build_job_completed",
            project_id=project_id,
            kind=outcome.kind,
            files_changed=outcome.files_changed,
            version_number=outcome.version_number,
        )
        return outcome


async def run_worker():
    """Main worker loop."""
    global _runner
    settings = get_settings()
    setup_logging(service_name="build-worker", log_format=settings.log_format, log_level=settings.log_level)

    services = build_services(settings)

    builder = AppBuilder(
        services.store,
        services.codegen,
        ContextBuilder(services.store, services.codegen),
        autofix_max_iterations=settings.autofix_max_iterations,
    )
    worker = BuildWorker(services.store, services.broadcaster, builder)
    queue = JobQueue(services.redis, build_queue_config(settings))
    _runner = QueueRunner(
        queue,
        worker.handle,
        lock=ProjectLock(services.redis, lock_ttl_for(queue)),
        concurrency=settings.build_concurrency,
        reclaim_idle_ms=default_reclaim_idle_ms(queue),
    )

    logger.info("build_worker_started", consumer=_runner.consumer)
    try:
        await _runner.run()
    finally:
        await services.close()
        logger.info("build_worker_shutdown")


def main():
    """Entry point for running as module."""
    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
