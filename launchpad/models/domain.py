"""Domain mapping model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id


class DomainType(str, Enum):
    SUBDOMAIN = "subdomain"
    CUSTOM = "custom"


class DomainMapping(Base):
    """Routing assignment of a subdomain or custom domain to a project."""

    __tablename__ = "project_domains"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    domain_type: Mapped[str] = mapped_column(String(20), default=DomainType.SUBDOMAIN.value)
    domain: Mapped[str] = mapped_column(String(255), unique=True)
    slug: Mapped[str | None] = mapped_column(String(63), unique=True, nullable=True)
    target_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    ssl_status: Mapped[str] = mapped_column(String(20), default="pending")
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    custom_hostname_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    dns_record_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
