"""Build and iterate pipelines that turn a user message into project files.

Build (first time, no files yet):
    understanding -> scaffold -> generating -> config -> versioning -> context -> finalizing

Iterate (existing project):
    loading -> iterating -> applying -> env_vars -> validating -> fixing
    -> versioning -> context -> finalizing

Any exception marks the project failed, emits a -1 progress event, appends a
failure message to the conversation and is re-raised to the worker.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from ..contracts.jobs import BuildJobPayload
from ..errors import UnsupportedModeError
from ..models import ProjectFile
from ..pipeline import Stage, run_stages
from ..progress import ProgressReporter
from ..store import ProjectSettings, ProjectStore
from . import planner
from .autofix import DEFAULT_MAX_ITERATIONS, AutoFixOutcome, run_autofix_loop
from .client import CodeGenerationService, RequestMeta
from .context import ContextBuilder
from .schemas import FileAction, IterationResult, Requirements, ValidationIssue
from .validator import validate_changes

logger = structlog.get_logger(__name__)

MODE_AGENT = "agent"
MODE_MONOLITHIC = "monolithic"


@dataclass
class BuildContext:
    payload: BuildJobPayload
    meta: RequestMeta
    reporter: ProgressReporter
    message: str = ""
    context_md: str = ""
    requirements: Requirements = field(default_factory=Requirements)
    settings: ProjectSettings = field(default_factory=ProjectSettings)
    files_created: int = 0
    version_number: int | None = None
    # iterate only
    current_files: list[ProjectFile] = field(default_factory=list)
    iteration: IterationResult | None = None
    mode: str | None = None
    files_applied: int = 0
    validation_errors: list[ValidationIssue] = field(default_factory=list)
    autofix: AutoFixOutcome | None = None

    @property
    def project_id(self) -> str:
        return self.payload.project_id


@dataclass
class BuildOutcome:
    kind: str
    files_changed: int
    version_number: int | None
    summary: str = ""
    remaining_errors: list[str] = field(default_factory=list)


class AppBuilder:
    """Runs the build and iterate pipelines for one project at a time."""

    def __init__(
        self,
        store: ProjectStore,
        service: CodeGenerationService,
        context_builder: ContextBuilder | None = None,
        autofix_max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        self.store = store
        self.service = service
        self.context_builder = context_builder or ContextBuilder(store, service)
        self.autofix_max_iterations = autofix_max_iterations

    # === Entry points ===

    async def build(self, payload: BuildJobPayload, reporter: ProgressReporter) -> BuildOutcome:
        ctx = self._new_context(payload, reporter)
        logger.info("build_started", project_id=payload.project_id, message_id=payload.message_id)
        try:
            ctx = await run_stages(self.build_stages(), ctx, reporter)
        except Exception as e:
            await self.record_failure(payload, reporter, e, "Build")
            raise
        logger.info(
            "build_completed",
            project_id=ctx.project_id,
            files_created=ctx.files_created,
            version_number=ctx.version_number,
        )
        return BuildOutcome(kind="build", files_changed=ctx.files_created, version_number=ctx.version_number)

    async def iterate(self, payload: BuildJobPayload, reporter: ProgressReporter) -> BuildOutcome:
        ctx = self._new_context(payload, reporter)
        logger.info("iteration_started", project_id=payload.project_id, message_id=payload.message_id)
        try:
            ctx = await run_stages(self.iterate_stages(), ctx, reporter)
        except Exception as e:
            await self.record_failure(payload, reporter, e, "Iteration")
            raise
        remaining = ctx.autofix.describe_remaining() if ctx.autofix else []
        logger.info(
            "iteration_completed",
            project_id=ctx.project_id,
            mode=ctx.mode,
            files_changed=ctx.files_applied,
            version_number=ctx.version_number,
            remaining_errors=len(remaining),
        )
        return BuildOutcome(
            kind="iterate",
            files_changed=ctx.files_applied,
            version_number=ctx.version_number,
            summary=ctx.iteration.summary if ctx.iteration else "",
            remaining_errors=remaining,
        )

    def build_stages(self) -> list[Stage[BuildContext]]:
        return [
            Stage("understanding", 10, self._understand, "Requirements analyzed", 2, "Analyzing your requirements..."),
            Stage(
                "scaffold",
                20,
                self._scaffold,
                lambda ctx: f"Created {ctx.files_created} scaffold files",
                12,
                "Creating project scaffold...",
            ),
            Stage("generating", 70, self._generate, lambda ctx: f"Generated {ctx.files_created} files"),
            Stage("config", 75, self._config, "Configuration files created", 71, "Generating configuration files..."),
            Stage(
                "versioning",
                80,
                self._snapshot,
                lambda ctx: f"Version {ctx.version_number} created",
                76,
                "Creating version snapshot...",
            ),
            Stage("context", 85, self._rebuild_context, "Project context updated", 81, "Building project context..."),
            Stage("finalizing", 100, self._finalize_build, "Build complete!", 90, "Finalizing build..."),
        ]

    def iterate_stages(self) -> list[Stage[BuildContext]]:
        return [
            Stage("loading", 10, self._load, "Context loaded", 2, "Loading project context..."),
            Stage(
                "iterating",
                60,
                self._generate_changes,
                lambda ctx: f"Generated {len(ctx.iteration.changed_files)} file changes",
                12,
                "Generating code changes...",
            ),
            Stage("applying", 80, self._apply_changes, lambda ctx: f"Applied {ctx.files_applied} file changes"),
            Stage("env_vars", 82, self._apply_env_vars, "Environment variables updated"),
            Stage("validating", 85, self._validate, lambda ctx: f"Found {len(ctx.validation_errors)} issues"),
            Stage("fixing", 88, self._autofix, "Automatic fixes applied"),
            Stage("versioning", 90, self._snapshot, lambda ctx: f"Version {ctx.version_number} created"),
            Stage("context", 95, self._rebuild_context, "Project context updated", 91, "Updating project context..."),
            Stage("finalizing", 100, self._finalize_iteration, "Build complete!"),
        ]

    def _new_context(self, payload: BuildJobPayload, reporter: ProgressReporter) -> BuildContext:
        meta = RequestMeta(
            project_id=payload.project_id,
            user_id=payload.user_id,
            correlation_id=payload.correlation_id,
            model=payload.model,
        )
        return BuildContext(payload=payload, meta=meta, reporter=reporter)

    # === Build stages ===

    async def _understand(self, ctx: BuildContext) -> BuildContext:
        ctx.message = (await self.store.get_message(ctx.payload.message_id)).content
        ctx.context_md = await self.store.get_context(ctx.project_id)
        ctx.requirements = await self.service.analyze(ctx.message, ctx.context_md, ctx.meta)

        ctx.settings = await self.store.get_settings(ctx.project_id)
        ctx.settings.requirements = ctx.requirements
        await self.store.update_settings(ctx.project_id, ctx.settings)
        await self.store.update_project(ctx.project_id, app_type=ctx.requirements.framework)

        await self.store.append_message(
            ctx.payload.conversation_id,
            "assistant",
            planner.requirements_summary(ctx.requirements),
            project_id=ctx.project_id,
            meta={"type": "requirements-analysis"},
        )
        return ctx

    async def _scaffold(self, ctx: BuildContext) -> BuildContext:
        for file in await self.service.scaffold(ctx.requirements, ctx.meta):
            await self.store.save_generated(ctx.project_id, file)
            ctx.files_created += 1
        return ctx

    async def _generate(self, ctx: BuildContext) -> BuildContext:
        plan = planner.build_file_plan(ctx.requirements)
        for index, spec in enumerate(plan, start=1):
            await ctx.reporter.report(
                min(20 + round(index / len(plan) * 50), 70), "generating", f"Generating {spec.path}..."
            )
            existing = await self.store.list_files(ctx.project_id)
            generated = await self.service.generate(ctx.requirements, spec, existing, ctx.context_md, ctx.meta)
            await self.store.save_generated(ctx.project_id, generated)
            ctx.files_created += 1
        return ctx

    async def _config(self, ctx: BuildContext) -> BuildContext:
        specs = planner.build_config_specs(ctx.requirements)
        for file in await self.service.generate_batch(ctx.requirements, specs, ctx.context_md, ctx.meta):
            await self.store.save_generated(ctx.project_id, file)
            ctx.files_created += 1
        return ctx

    async def _snapshot(self, ctx: BuildContext) -> BuildContext:
        version = await self.store.create_version(
            ctx.project_id,
            prompt_summary=ctx.message,
            diff_summary=ctx.iteration.summary if ctx.iteration else None,
        )
        ctx.version_number = version.version_number
        return ctx

    async def _rebuild_context(self, ctx: BuildContext) -> BuildContext:
        try:
            await self.context_builder.rebuild(ctx.project_id, ctx.meta)
        except Exception as e:
            logger.warning(
                "context_rebuild_failed",
                project_id=ctx.project_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        return ctx

    async def _finalize_build(self, ctx: BuildContext) -> BuildContext:
        await self.store.append_message(
            ctx.payload.conversation_id,
            "assistant",
            planner.completion_message(ctx.requirements, ctx.files_created),
            project_id=ctx.project_id,
            meta={
                "type": "build-complete",
                "filesCreated": ctx.files_created,
                "versionNumber": ctx.version_number,
            },
        )
        return ctx

    # === Iterate stages ===

    async def _load(self, ctx: BuildContext) -> BuildContext:
        ctx.message = (await self.store.get_message(ctx.payload.message_id)).content
        ctx.context_md = await self.store.get_context(ctx.project_id)
        ctx.current_files = await self.store.list_files(ctx.project_id)
        ctx.settings = await self.store.get_settings(ctx.project_id)
        ctx.requirements = ctx.settings.requirements or Requirements()
        return ctx

    async def _generate_changes(self, ctx: BuildContext) -> BuildContext:
        try:
            ctx.iteration = await self.service.agent_session(ctx.message, ctx.current_files, ctx.context_md, ctx.meta)
            ctx.mode = MODE_AGENT
        except UnsupportedModeError:
            logger.info("agent_session_unsupported", project_id=ctx.project_id)
        except Exception as e:
            logger.warning(
                "agent_session_failed",
                project_id=ctx.project_id,
                error=str(e),
                error_type=type(e).__name__,
            )

        if ctx.mode is None:
            ctx.iteration = await self.service.iterate(
                ctx.message, ctx.current_files, ctx.requirements, ctx.context_md, ctx.meta
            )
            ctx.mode = MODE_MONOLITHIC
        return ctx

    async def _apply_changes(self, ctx: BuildContext) -> BuildContext:
        changes = ctx.iteration.changed_files
        for index, change in enumerate(changes, start=1):
            await ctx.reporter.report(
                min(60 + round(index / len(changes) * 20), 80), "applying", f"Applying changes to {change.path}..."
            )
            if change.action is FileAction.DELETE:
                await self.store.delete_file(ctx.project_id, change.path)
                logger.info("file_deleted", project_id=ctx.project_id, path=change.path)
            else:
                await self.store.upsert_file(ctx.project_id, change.path, change.content, change.language)
            ctx.files_applied += 1
        return ctx

    async def _apply_env_vars(self, ctx: BuildContext) -> BuildContext:
        env_vars = ctx.iteration.env_vars_needed
        if not env_vars:
            return ctx

        env_file = await self.store.get_file(ctx.project_id, planner.ENV_EXAMPLE_PATH)
        if env_file is not None:
            updated = planner.append_env_vars(env_file.content, env_vars)
            if updated is not None:
                await self.store.upsert_file(ctx.project_id, planner.ENV_EXAMPLE_PATH, updated, "dotenv")

        settings = await self.store.get_settings(ctx.project_id)
        settings.env_vars_needed = list(dict.fromkeys([*settings.env_vars_needed, *env_vars]))
        if settings.requirements is not None:
            settings.requirements.env_vars_needed = list(
                dict.fromkeys([*settings.requirements.env_vars_needed, *env_vars])
            )
        await self.store.update_settings(ctx.project_id, settings)
        ctx.settings = settings
        return ctx

    async def _validate(self, ctx: BuildContext) -> BuildContext:
        if ctx.mode != MODE_MONOLITHIC:
            return ctx
        report = validate_changes(ctx.iteration.changed_files, ctx.current_files)
        ctx.validation_errors = report.errors
        if report.errors:
            logger.info(
                "validation_errors_found",
                project_id=ctx.project_id,
                error_count=len(report.errors),
            )
        return ctx

    async def _autofix(self, ctx: BuildContext) -> BuildContext:
        if ctx.mode != MODE_MONOLITHIC or not ctx.validation_errors:
            return ctx

        async def persist(file):
            await self.store.save_generated(ctx.project_id, file)

        ctx.autofix = await run_autofix_loop(
            self.service,
            await self.store.list_files(ctx.project_id),
            ctx.validation_errors,
            ctx.meta,
            max_iterations=self.autofix_max_iterations,
            apply=persist,
        )
        return ctx

    async def _finalize_iteration(self, ctx: BuildContext) -> BuildContext:
        remaining = ctx.autofix.describe_remaining() if ctx.autofix else []
        await self.store.append_message(
            ctx.payload.conversation_id,
            "assistant",
            planner.iteration_message(ctx.iteration.summary, ctx.files_applied, remaining),
            project_id=ctx.project_id,
            meta={
                "type": "iteration-complete",
                "mode": ctx.mode,
                "filesChanged": ctx.files_applied,
                "versionNumber": ctx.version_number,
                "summary": ctx.iteration.summary,
                "remainingIssues": remaining,
                "autofixIterations": ctx.autofix.iterations if ctx.autofix else 0,
            },
        )
        return ctx

    # === Failure ===

    async def record_failure(
        self, payload: BuildJobPayload, reporter: ProgressReporter, error: Exception, kind: str = "Build"
    ) -> None:
        """Persist the failure so it is diagnosable from stored state. Never raises."""
        project_id = payload.project_id
        message = str(error) or type(error).__name__
        logger.error(
            f"{kind.lower()}_failed",
            project_id=project_id,
            error=message,
            error_type=type(error).__name__,
            exc_info=True,
        )
        try:
            await self.store.mark_failed(project_id, message)
        except Exception as db_error:
            logger.error("project_failure_status_update_failed", project_id=project_id, error=str(db_error))

        await reporter.fail(f"{kind} failed: {message}")

        try:
            await self.store.append_message(
                payload.conversation_id,
                "assistant",
                planner.failure_message(message),
                project_id=project_id,
                meta={"type": "build-failed", "error": message},
            )
        except Exception as msg_error:
            logger.error("failure_message_store_failed", project_id=project_id, error=str(msg_error))
