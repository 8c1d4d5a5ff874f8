"""Deployment model - one row per deploy attempt."""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Float, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    DEPLOYING = "deploying"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.SUCCESS, DeploymentStatus.FAILED)


class Deployment(Base):
    """Track a single deploy attempt. Immutable once success or failed."""

    __tablename__ = "deployments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    status: Mapped[str] = mapped_column(String(20), default=DeploymentStatus.PENDING.value)
    url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    remote_deployment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    compute_project_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    compute_service_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    compute_environment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Deployment(id={self.id}, project={self.project_id}, status={self.status})>"
