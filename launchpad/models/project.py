"""Project model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    BUILDING = "building"
    DEPLOYING = "deploying"
    READY = "ready"
    DEPLOYED = "deployed"
    FAILED = "failed"


class Project(Base):
    """A generated application and its build/deploy state."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=ProjectStatus.DRAFT.value, index=True)
    build_progress: Mapped[int] = mapped_column(Integer, default=0)
    current_stage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    app_type: Mapped[str] = mapped_column(String(50), default="react")
    deployment_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    compute_project_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    compute_service_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Typed access through ProjectStore.get_settings / update_settings only
    settings: Mapped[dict] = mapped_column(JSON, default=dict)
    context_md: Mapped[str | None] = mapped_column(Text, nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_cost: Mapped[float] = mapped_column(Float, default=0.0)
    cost_breakdown: Mapped[dict] = mapped_column(JSON, default=dict)
    build_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deployed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Project(id={self.id}, name={self.name}, status={self.status})>"
