"""Persistence operations used by the workers.

Every method opens its own session and commits before returning, so a stage
that completes has durably written its state. Writes are idempotent (upsert by
path, last-write-wins status) or append-only (versions, messages, costs), which
keeps re-delivered jobs from corrupting state.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
import hashlib
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from .codegen.planner import infer_language
from .codegen.schemas import GeneratedFile, Requirements
from .errors import MessageNotFoundError, ProjectNotFoundError
from .models import (
    CostEntry,
    Deployment,
    DeploymentStatus,
    DomainMapping,
    DomainType,
    Message,
    Project,
    ProjectFile,
    ProjectSecret,
    ProjectStatus,
    ProjectVersion,
    SourceRepoLink,
)

logger = structlog.get_logger(__name__)


def content_hash(content: str) -> str:
    """SHA-256 hex digest of file content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _now() -> datetime:
    return datetime.now(UTC)


class ProjectSettings(BaseModel):
    """Typed view of ``Project.settings``."""

    requirements: Requirements | None = None
    env_vars_needed: list[str] = Field(default_factory=list)


class ProjectStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # === Projects ===

    async def create_project(self, user_id: str, name: str, **fields: Any) -> Project:
        async with self._session_factory() as session, session.begin():
            project = Project(user_id=user_id, name=name, **fields)
            session.add(project)
        return project

    async def get_project(self, project_id: str) -> Project:
        async with self._session_factory() as session:
            project = await session.get(Project, project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def update_project(self, project_id: str, **fields: Any) -> Project:
        async with self._session_factory() as session, session.begin():
            project = await session.get(Project, project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
            for key, value in fields.items():
                setattr(project, key, value)
        return project

    async def update_progress(self, project_id: str, progress: int, stage: str) -> None:
        await self.update_project(project_id, build_progress=progress, current_stage=stage)

    async def mark_building(self, project_id: str) -> Project:
        return await self.update_project(
            project_id,
            status=ProjectStatus.BUILDING.value,
            build_progress=0,
            current_stage="initializing",
            error_message=None,
            build_started_at=_now(),
        )

    async def mark_ready(self, project_id: str) -> Project:
        return await self.update_project(
            project_id,
            status=ProjectStatus.READY.value,
            build_progress=100,
            current_stage="complete",
            error_message=None,
        )

    async def mark_failed(self, project_id: str, error_message: str) -> Project:
        return await self.update_project(
            project_id,
            status=ProjectStatus.FAILED.value,
            build_progress=-1,
            current_stage="error",
            error_message=error_message,
        )

    async def get_settings(self, project_id: str) -> ProjectSettings:
        project = await self.get_project(project_id)
        return ProjectSettings.model_validate(project.settings or {})

    async def update_settings(self, project_id: str, settings: ProjectSettings) -> None:
        await self.update_project(
            project_id, settings=settings.model_dump(mode="json", by_alias=True, exclude_none=True)
        )

    async def get_context(self, project_id: str) -> str:
        project = await self.get_project(project_id)
        return project.context_md or ""

    async def set_context(self, project_id: str, context_md: str) -> None:
        await self.update_project(project_id, context_md=context_md)

    # === Files ===

    async def list_files(self, project_id: str) -> list[ProjectFile]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProjectFile).where(ProjectFile.project_id == project_id).order_by(ProjectFile.path)
            )
            return list(result.scalars().all())

    async def count_files(self, project_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(ProjectFile).where(ProjectFile.project_id == project_id)
            )
            return result.scalar_one()

    async def get_file(self, project_id: str, path: str) -> ProjectFile | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProjectFile).where(ProjectFile.project_id == project_id, ProjectFile.path == path)
            )
            return result.scalar_one_or_none()

    async def upsert_file(
        self, project_id: str, path: str, content: str, language: str | None = None
    ) -> ProjectFile:
        """Insert or update the file at ``path``. Applying the same content twice is a no-op."""
        values = {
            "content": content,
            "language": language or infer_language(path),
            "checksum": content_hash(content),
            "size": len(content.encode("utf-8")),
        }
        try:
            return await self._upsert_file(project_id, path, values)
        except IntegrityError:
            # a concurrent insert won the unique (project_id, path) race
            return await self._upsert_file(project_id, path, values)

    async def _upsert_file(self, project_id: str, path: str, values: dict[str, Any]) -> ProjectFile:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                select(ProjectFile).where(ProjectFile.project_id == project_id, ProjectFile.path == path)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = ProjectFile(project_id=project_id, path=path, **values)
                session.add(row)
            elif row.checksum != values["checksum"] or row.language != values["language"]:
                for key, value in values.items():
                    setattr(row, key, value)
        return row

    async def save_generated(self, project_id: str, file: GeneratedFile) -> ProjectFile:
        return await self.upsert_file(project_id, file.path, file.content, file.language)

    async def delete_file(self, project_id: str, path: str) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(ProjectFile).where(ProjectFile.project_id == project_id, ProjectFile.path == path)
            )
        return result.rowcount > 0

    async def replace_files(self, project_id: str, files: Iterable[GeneratedFile]) -> int:
        """Replace the whole file set in one transaction."""
        count = 0
        async with self._session_factory() as session, session.begin():
            await session.execute(delete(ProjectFile).where(ProjectFile.project_id == project_id))
            for file in files:
                session.add(
                    ProjectFile(
                        project_id=project_id,
                        path=file.path,
                        content=file.content,
                        language=file.language or infer_language(file.path),
                        checksum=content_hash(file.content),
                        size=len(file.content.encode("utf-8")),
                    )
                )
                count += 1
        return count

    # === Versions ===

    async def create_version(
        self, project_id: str, prompt_summary: str | None = None, diff_summary: str | None = None
    ) -> ProjectVersion:
        """Append a snapshot of the current file checksums."""
        async with self._session_factory() as session, session.begin():
            files = await session.execute(
                select(ProjectFile).where(ProjectFile.project_id == project_id).order_by(ProjectFile.path)
            )
            snapshot = [
                {"path": f.path, "checksum": f.checksum, "language": f.language} for f in files.scalars()
            ]
            latest = await session.execute(
                select(func.max(ProjectVersion.version_number)).where(ProjectVersion.project_id == project_id)
            )
            version = ProjectVersion(
                project_id=project_id,
                version_number=(latest.scalar_one_or_none() or 0) + 1,
                snapshot=snapshot,
                prompt_summary=prompt_summary,
                diff_summary=diff_summary,
            )
            session.add(version)
        logger.info(
            "version_created",
            project_id=project_id,
            version_number=version.version_number,
            file_count=len(snapshot),
        )
        return version

    async def list_versions(self, project_id: str) -> list[ProjectVersion]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProjectVersion)
                .where(ProjectVersion.project_id == project_id)
                .order_by(ProjectVersion.version_number)
            )
            return list(result.scalars().all())

    # === Conversation ===

    async def get_message(self, message_id: str) -> Message:
        async with self._session_factory() as session:
            message = await session.get(Message, message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        project_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> Message:
        async with self._session_factory() as session, session.begin():
            message = Message(
                conversation_id=conversation_id,
                project_id=project_id,
                role=role,
                content=content,
                meta=meta or {},
            )
            session.add(message)
        return message

    async def list_messages(self, project_id: str, limit: int = 50) -> list[Message]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message)
                .where(Message.project_id == project_id)
                .order_by(Message.created_at.desc())
                .limit(limit)
            )
            return list(reversed(result.scalars().all()))

    # === Secrets and source control ===

    async def add_secret(self, project_id: str, key: str, encrypted_value: str) -> ProjectSecret:
        async with self._session_factory() as session, session.begin():
            secret = ProjectSecret(project_id=project_id, key=key, encrypted_value=encrypted_value)
            session.add(secret)
        return secret

    async def list_secrets(self, project_id: str) -> list[ProjectSecret]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProjectSecret).where(ProjectSecret.project_id == project_id).order_by(ProjectSecret.key)
            )
            return list(result.scalars().all())

    async def get_source_link(self, project_id: str) -> SourceRepoLink | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SourceRepoLink).where(SourceRepoLink.project_id == project_id)
            )
            return result.scalar_one_or_none()

    async def link_source_repo(
        self, project_id: str, repo_full_name: str, access_token: str, default_branch: str = "main"
    ) -> SourceRepoLink:
        async with self._session_factory() as session, session.begin():
            link = SourceRepoLink(
                project_id=project_id,
                repo_full_name=repo_full_name,
                access_token=access_token,
                default_branch=default_branch,
            )
            session.add(link)
        return link

    async def update_source_link(self, project_id: str, **fields: Any) -> None:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                select(SourceRepoLink).where(SourceRepoLink.project_id == project_id)
            )
            link = result.scalar_one_or_none()
            if link is None:
                return
            for key, value in fields.items():
                setattr(link, key, value)

    # === Deployments ===

    async def create_deployment(self, project_id: str) -> Deployment:
        async with self._session_factory() as session, session.begin():
            deployment = Deployment(
                project_id=project_id,
                status=DeploymentStatus.PENDING.value,
                started_at=_now(),
            )
            session.add(deployment)
        return deployment

    async def get_deployment(self, deployment_id: str) -> Deployment | None:
        async with self._session_factory() as session:
            return await session.get(Deployment, deployment_id)

    async def list_deployments(self, project_id: str) -> list[Deployment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Deployment).where(Deployment.project_id == project_id).order_by(Deployment.started_at)
            )
            return list(result.scalars().all())

    async def update_deployment(self, deployment_id: str, **fields: Any) -> Deployment | None:
        """Update a non-terminal deployment. Terminal rows are left untouched."""
        async with self._session_factory() as session, session.begin():
            deployment = await session.get(Deployment, deployment_id)
            if deployment is None or not self._mutable(deployment):
                return deployment
            for key, value in fields.items():
                setattr(deployment, key, value)
        return deployment

    async def finalize_deployment(
        self,
        deployment_id: str,
        project_id: str,
        url: str,
        remote_deployment_id: str | None,
        cost: float = 0.0,
    ) -> None:
        """Mark deployment ``success`` and project ``deployed`` in one transaction."""
        now = _now()
        async with self._session_factory() as session, session.begin():
            deployment = await session.get(Deployment, deployment_id)
            project = await session.get(Project, project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
            if deployment is not None and self._mutable(deployment):
                deployment.status = DeploymentStatus.SUCCESS.value
                deployment.url = url
                deployment.remote_deployment_id = remote_deployment_id
                deployment.cost = cost
                deployment.error_message = None
                deployment.completed_at = now
            project.status = ProjectStatus.DEPLOYED.value
            project.deployment_url = url
            project.error_message = None
            project.deployed_at = now

    async def fail_deployment(self, deployment_id: str | None, project_id: str, error_message: str) -> None:
        """Mark deployment and project ``failed`` in one transaction."""
        async with self._session_factory() as session, session.begin():
            if deployment_id is not None:
                deployment = await session.get(Deployment, deployment_id)
                if deployment is not None and self._mutable(deployment):
                    deployment.status = DeploymentStatus.FAILED.value
                    deployment.error_message = error_message
                    deployment.completed_at = _now()
            project = await session.get(Project, project_id)
            if project is not None:
                project.status = ProjectStatus.FAILED.value
                project.error_message = error_message

    @staticmethod
    def _mutable(deployment: Deployment) -> bool:
        if DeploymentStatus(deployment.status).is_terminal:
            logger.warning(
                "deployment_already_terminal",
                deployment_id=deployment.id,
                status=deployment.status,
            )
            return False
        return True

    # === Domains ===

    async def get_primary_subdomain(self, project_id: str) -> DomainMapping | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DomainMapping).where(
                    DomainMapping.project_id == project_id,
                    DomainMapping.domain_type == DomainType.SUBDOMAIN.value,
                )
            )
            return result.scalars().first()

    async def list_domains(self, project_id: str) -> list[DomainMapping]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DomainMapping).where(DomainMapping.project_id == project_id)
            )
            return list(result.scalars().all())

    async def slug_exists(self, slug: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(DomainMapping.id).where(DomainMapping.slug == slug))
            return result.first() is not None

    async def create_domain_mapping(
        self,
        project_id: str,
        domain: str,
        domain_type: DomainType,
        target_url: str | None,
        slug: str | None = None,
        ssl_status: str = "pending",
        is_primary: bool = False,
        **fields: Any,
    ) -> DomainMapping:
        async with self._session_factory() as session, session.begin():
            mapping = DomainMapping(
                project_id=project_id,
                domain=domain,
                domain_type=domain_type.value,
                slug=slug,
                target_url=target_url,
                ssl_status=ssl_status,
                is_primary=is_primary,
                **fields,
            )
            session.add(mapping)
        return mapping

    async def update_domain_mapping(self, mapping_id: str, **fields: Any) -> None:
        async with self._session_factory() as session, session.begin():
            mapping = await session.get(DomainMapping, mapping_id)
            if mapping is None:
                return
            for key, value in fields.items():
                setattr(mapping, key, value)

    async def delete_domain_mapping(self, mapping_id: str) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(delete(DomainMapping).where(DomainMapping.id == mapping_id))

    # === Costs ===

    async def record_cost(
        self,
        project_id: str,
        category: str,
        amount: float,
        deployment_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> CostEntry:
        """Append a cost entry and roll it up onto the project."""
        async with self._session_factory() as session, session.begin():
            entry = CostEntry(
                project_id=project_id,
                deployment_id=deployment_id,
                category=category,
                amount=amount,
                details=details or {},
            )
            session.add(entry)
            project = await session.get(Project, project_id)
            if project is not None:
                breakdown = dict(project.cost_breakdown or {})
                breakdown[category] = round(breakdown.get(category, 0.0) + amount, 6)
                project.cost_breakdown = breakdown
                project.total_cost = (project.total_cost or 0.0) + amount
        return entry
