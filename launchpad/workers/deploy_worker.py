"""Deploy Worker: consumes deploy:queue and ships a project to the compute platform.

Run standalone: python -m launchpad.workers.deploy_worker

Stages:
    init -> compute_project -> service -> env_vars -> artifact -> deliver
    -> domain -> await -> finalize -> deployed

A first deploy also allocates a platform subdomain: the mapping row reserves
the slug, then the edge entry is written. If the job fails or is cancelled
after that allocation, both are removed before the deployment and project
are marked failed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
import math
import signal
import time

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
import structlog

from .. import artifacts, domains
from ..clients import ComputePlatform, EdgeRouter, RemoteDeployment, RemoteStatus, SourceControl
from ..config import get_settings
from ..contracts.jobs import DeployJobPayload, Job, MarketingJobPayload
from ..costs import deployment_cost
from ..crypto import InvalidToken, decrypt_secret
from ..errors import DeploymentFailedError, JobInterruptedError, NonRetryableJobError
from ..logging_config import setup_logging
from ..models import DeploymentStatus, DomainMapping, DomainType, Project, ProjectStatus
from ..pipeline import Stage, run_stages
from ..progress import ProgressBroadcaster, ProgressReporter
from ..queues import MARKETING_QUEUE_CONFIG, JobQueue, ProjectLock, deploy_queue_config
from ..services import build_services
from ..store import ProjectStore
from .runner import QueueRunner, default_reclaim_idle_ms, lock_ttl_for

logger = structlog.get_logger(__name__)

_runner: QueueRunner | None = None

POLL_PROGRESS_START = 70
POLL_PROGRESS_END = 90
SLUG_RESERVE_ATTEMPTS = 3


def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    logger.info("shutdown_signal_received", signal=signum)
    if _runner is not None:
        _runner.request_stop()


@dataclass
class DeployContext:
    payload: DeployJobPayload
    project: Project
    deployment_id: str
    reporter: ProgressReporter
    started_at: float = field(default_factory=time.monotonic)
    compute_project_id: str | None = None
    service_id: str | None = None
    environment_id: str | None = None
    compute_url: str | None = None
    deployment_url: str | None = None
    mapping: DomainMapping | None = None
    new_mapping: DomainMapping | None = None
    remote: RemoteDeployment | None = None
    marketing_job_id: str | None = None

    @property
    def project_id(self) -> str:
        return self.payload.project_id


class DeployWorker:
    def __init__(
        self,
        store: ProjectStore,
        broadcaster: ProgressBroadcaster,
        compute: ComputePlatform,
        edge: EdgeRouter,
        source_control: SourceControl,
        marketing_queue: JobQueue,
        platform_domain: str,
        poll_timeout: float = 600.0,
        poll_interval: float = 10.0,
        decrypt: Callable[[str], str] = decrypt_secret,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.compute = compute
        self.edge = edge
        self.source_control = source_control
        self.marketing_queue = marketing_queue
        self.platform_domain = platform_domain
        self.poll_timeout = poll_timeout
        self.poll_interval = poll_interval
        self._decrypt = decrypt

    def stages(self) -> list[Stage[DeployContext]]:
        return [
            Stage("init", 5, self._init, "Preparing deployment..."),
            Stage(
                "compute_project",
                15,
                self._ensure_compute_project,
                "Compute project ready",
                10,
                "Creating compute project...",
            ),
            Stage("service", 30, self._ensure_service, "Service configured", 25, "Configuring service..."),
            Stage("env_vars", 35, self._push_env_vars, "Environment variables set"),
            Stage("artifact", 40, self._ensure_artifact, "Build files ready"),
            Stage("deliver", 45, self._deliver, "Deploying application..."),
            Stage("domain", 60, self._resolve_domain, "Domain configured", 50, "Setting up domain..."),
            Stage(
                "await",
                POLL_PROGRESS_END,
                self._await_deployment,
                lambda ctx: f"Deployment status: {ctx.remote.raw_status or ctx.remote.status.value}",
                POLL_PROGRESS_START,
                "Waiting for deployment to complete...",
            ),
            Stage("finalize", 95, self._finalize, "Finalizing deployment..."),
            Stage("deployed", 100, self._announce, "Deployment successful!"),
        ]

    async def handle(self, job: Job) -> DeployContext:
        try:
            payload = DeployJobPayload.model_validate(job.payload)
        except ValidationError as e:
            raise NonRetryableJobError(f"Invalid deploy payload: {e}") from e
        return await self.process(payload)

    async def process(self, payload: DeployJobPayload) -> DeployContext:
        project = await self.store.get_project(payload.project_id)
        deployment = await self.store.create_deployment(project.id)
        ctx = DeployContext(
            payload=payload,
            project=project,
            deployment_id=deployment.id,
            reporter=ProgressReporter(self.broadcaster, project.id, store=self.store),
        )
        logger.info("deploy_job_started", project_id=project.id, deployment_id=deployment.id)

        try:
            ctx = await run_stages(self.stages(), ctx, ctx.reporter)
        except asyncio.CancelledError:
            await self._handle_failure(ctx, JobInterruptedError("Deployment was interrupted before it finished"))
            raise
        except Exception as e:
            await self._handle_failure(ctx, e)
            raise

        logger.info(
            "deploy_job_completed",
            project_id=ctx.project_id,
            deployment_id=ctx.deployment_id,
            url=ctx.deployment_url,
        )
        return ctx

    # === Stages ===

    async def _init(self, ctx: DeployContext) -> DeployContext:
        await self.store.update_project(ctx.project_id, status=ProjectStatus.DEPLOYING.value)
        await self.store.update_deployment(ctx.deployment_id, status=DeploymentStatus.BUILDING.value)
        return ctx

    async def _ensure_compute_project(self, ctx: DeployContext) -> DeployContext:
        ctx.compute_project_id = ctx.project.compute_project_id
        if not ctx.compute_project_id:
            ctx.compute_project_id = await self.compute.create_project(ctx.project.name)
            await self.store.update_project(ctx.project_id, compute_project_id=ctx.compute_project_id)
        return ctx

    async def _ensure_service(self, ctx: DeployContext) -> DeployContext:
        ctx.service_id = ctx.project.compute_service_id
        if not ctx.service_id:
            service = await self.compute.create_service(ctx.compute_project_id, ctx.project.name)
            ctx.service_id = service.id
            ctx.environment_id = service.environment_id
            await self.store.update_project(ctx.project_id, compute_service_id=ctx.service_id)
        else:
            ctx.environment_id = await self.compute.get_environment_id(ctx.compute_project_id, ctx.service_id)

        await self.store.update_deployment(
            ctx.deployment_id,
            compute_project_id=ctx.compute_project_id,
            compute_service_id=ctx.service_id,
            compute_environment_id=ctx.environment_id,
        )
        return ctx

    async def _push_env_vars(self, ctx: DeployContext) -> DeployContext:
        secrets = await self.store.list_secrets(ctx.project_id)
        if not secrets or not ctx.environment_id:
            return ctx

        variables = {}
        for secret in secrets:
            try:
                variables[secret.key] = self._decrypt(secret.encrypted_value)
            except InvalidToken:
                logger.warning("secret_decrypt_failed", project_id=ctx.project_id, key=secret.key)
        if variables:
            await self.compute.set_env_vars(ctx.compute_project_id, ctx.environment_id, ctx.service_id, variables)
        return ctx

    async def _ensure_artifact(self, ctx: DeployContext) -> DeployContext:
        existing = {f.path for f in await self.store.list_files(ctx.project_id)}
        for path, content in artifacts.missing_build_files(existing, ctx.project.app_type).items():
            await self.store.upsert_file(ctx.project_id, path, content)
            logger.info("build_file_generated", project_id=ctx.project_id, path=path)
        return ctx

    async def _deliver(self, ctx: DeployContext) -> DeployContext:
        link = await self.store.get_source_link(ctx.project_id)
        if link is not None:
            await self.source_control.push(ctx.payload.user_id, ctx.project_id, "Deploy from Launchpad")
            if not ctx.project.deployment_url:
                await self.compute.connect_source_repo(
                    ctx.compute_project_id, ctx.service_id, link.repo_full_name, link.default_branch or "main"
                )
        else:
            await self.compute.trigger_deploy(ctx.compute_project_id, ctx.service_id, ctx.environment_id)

        await self.store.update_deployment(ctx.deployment_id, status=DeploymentStatus.DEPLOYING.value)
        return ctx

    async def _resolve_domain(self, ctx: DeployContext) -> DeployContext:
        ctx.mapping = await self.store.get_primary_subdomain(ctx.project_id)
        if ctx.mapping is not None:
            ctx.compute_url = ctx.mapping.target_url
            ctx.deployment_url = f"https://{ctx.mapping.domain}"
            return ctx

        ctx.compute_url = ctx.project.deployment_url
        if not ctx.compute_url and ctx.environment_id:
            ctx.compute_url = await self.compute.allocate_domain(ctx.service_id, ctx.environment_id)
        ctx.deployment_url = ctx.compute_url
        if ctx.compute_url:
            await self._allocate_subdomain(ctx)
        return ctx

    async def _allocate_subdomain(self, ctx: DeployContext) -> None:
        """Reserve a slug through the mapping row, then point the edge entry at the app.

        The edge entry is written only after the row is ours, so a losing
        job never touches another project's entry.
        """
        base = domains.slugify(ctx.project.name)
        slug = await domains.ensure_unique_slug(base, self.store.slug_exists)
        for attempt in range(1, SLUG_RESERVE_ATTEMPTS + 1):
            domain = domains.platform_domain_for(slug, self.platform_domain)
            try:
                ctx.new_mapping = await self.store.create_domain_mapping(
                    ctx.project_id,
                    domain,
                    DomainType.SUBDOMAIN,
                    ctx.compute_url,
                    slug=slug,
                    ssl_status="active",
                    is_primary=True,
                    verified_at=datetime.now(UTC),
                )
                break
            except IntegrityError:
                logger.warning("subdomain_slug_taken", project_id=ctx.project_id, slug=slug, attempt=attempt)
                slug = domains.suffixed_slug(base)
        else:
            logger.error("subdomain_assignment_failed", project_id=ctx.project_id, error="no free slug")
            return

        try:
            await self.edge.put_mapping(slug, ctx.compute_url)
        except Exception as e:
            logger.error(
                "subdomain_assignment_failed",
                project_id=ctx.project_id,
                slug=slug,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._release_new_mapping(ctx)
            return

        ctx.deployment_url = f"https://{domain}"
        logger.info("subdomain_assigned", project_id=ctx.project_id, domain=domain, target=ctx.compute_url)

    async def _await_deployment(self, ctx: DeployContext) -> DeployContext:
        async def forward(status: RemoteDeployment, elapsed: float) -> None:
            span = POLL_PROGRESS_END - POLL_PROGRESS_START
            progress = POLL_PROGRESS_START + min(span, math.floor(elapsed / self.poll_timeout * span))
            await ctx.reporter.report(
                progress, "await", f"Deployment status: {status.raw_status or status.status.value}"
            )

        ctx.remote = await self.compute.wait_for_deployment(
            ctx.compute_project_id,
            ctx.service_id,
            timeout=self.poll_timeout,
            interval=self.poll_interval,
            on_status=forward,
        )
        if ctx.remote.status is not RemoteStatus.SUCCESS:
            raise DeploymentFailedError(
                f"Deployment failed with status: {(ctx.remote.raw_status or ctx.remote.status.value).upper()}"
            )
        return ctx

    async def _finalize(self, ctx: DeployContext) -> DeployContext:
        reported_url = ctx.remote.url
        if ctx.mapping is not None:
            if reported_url and reported_url != ctx.mapping.target_url:
                await self.edge.put_mapping(ctx.mapping.slug, reported_url)
                await self.store.update_domain_mapping(ctx.mapping.id, target_url=reported_url)
                logger.info("subdomain_retargeted", project_id=ctx.project_id, target=reported_url)
        elif ctx.new_mapping is None and reported_url:
            ctx.deployment_url = reported_url

        build_minutes = math.ceil((time.monotonic() - ctx.started_at) / 60)
        cost = deployment_cost(build_minutes)
        await self.store.record_cost(
            ctx.project_id,
            "deployment",
            cost,
            deployment_id=ctx.deployment_id,
            details={"build_minutes": build_minutes},
        )
        await self.store.finalize_deployment(
            ctx.deployment_id,
            ctx.project_id,
            ctx.deployment_url,
            ctx.remote.deployment_id,
            cost=cost,
        )
        return ctx

    async def _announce(self, ctx: DeployContext) -> DeployContext:
        if not ctx.deployment_url:
            return ctx
        try:
            ctx.marketing_job_id = await self.marketing_queue.enqueue(
                MarketingJobPayload(project_id=ctx.project_id, deployment_url=ctx.deployment_url)
            )
        except Exception as e:
            logger.error(
                "marketing_enqueue_failed",
                project_id=ctx.project_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        return ctx

    # === Failure ===

    async def _delete_edge_entry(self, project_id: str, slug: str) -> None:
        try:
            await self.edge.delete_mapping(slug)
        except Exception as e:
            logger.error("subdomain_edge_cleanup_failed", project_id=project_id, slug=slug, error=str(e))

    async def _release_new_mapping(self, ctx: DeployContext) -> bool:
        mapping, ctx.new_mapping = ctx.new_mapping, None
        try:
            await self.store.delete_domain_mapping(mapping.id)
        except Exception as e:
            logger.error(
                "subdomain_mapping_cleanup_failed",
                project_id=ctx.project_id,
                mapping_id=mapping.id,
                error=str(e),
            )
            return False
        return True

    async def _handle_failure(self, ctx: DeployContext, error: Exception) -> None:
        """Undo this job's subdomain allocation, then mark everything failed. Never raises."""
        message = str(error) or type(error).__name__
        logger.error(
            "deploy_job_failed",
            project_id=ctx.project_id,
            deployment_id=ctx.deployment_id,
            error=message,
            error_type=type(error).__name__,
            exc_info=True,
        )

        if ctx.new_mapping is not None:
            slug = ctx.new_mapping.slug
            await self._delete_edge_entry(ctx.project_id, slug)
            if await self._release_new_mapping(ctx):
                logger.info("subdomain_rolled_back", project_id=ctx.project_id, slug=slug)

        try:
            await self.store.fail_deployment(ctx.deployment_id, ctx.project_id, message)
        except Exception as db_error:
            logger.error("deployment_failure_status_update_failed", project_id=ctx.project_id, error=str(db_error))

        await ctx.reporter.fail(message)


async def run_worker():
    """Main worker loop."""
    global _runner
    settings = get_settings()
    setup_logging(service_name="deploy-worker", log_format=settings.log_format, log_level=settings.log_level)

    services = build_services(settings)
    worker = DeployWorker(
        services.store,
        services.broadcaster,
        services.compute,
        services.edge,
        services.source_control,
        JobQueue(services.redis, MARKETING_QUEUE_CONFIG),
        settings.platform_domain,
        poll_timeout=settings.deploy_poll_timeout,
        poll_interval=settings.deploy_poll_interval,
    )
    queue = JobQueue(services.redis, deploy_queue_config(settings))
    _runner = QueueRunner(
        queue,
        worker.handle,
        lock=ProjectLock(services.redis, lock_ttl_for(queue)),
        concurrency=settings.deploy_concurrency,
        reclaim_idle_ms=default_reclaim_idle_ms(queue),
    )

    logger.info("deploy_worker_started", consumer=_runner.consumer)
    try:
        await _runner.run()
    finally:
        await services.close()
        logger.info("deploy_worker_shutdown")


def main():
    """Entry point for running as module."""
    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
