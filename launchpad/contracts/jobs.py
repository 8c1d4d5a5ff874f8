from datetime import UTC, datetime
from enum import Enum
from typing import Any
import uuid

from pydantic import BaseModel, Field


class JobType(str, Enum):
    BUILD = "build"
    DEPLOY = "deploy"
    MARKETING = "marketing"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    DEAD = "dead"


class BuildJobPayload(BaseModel):
    project_id: str
    conversation_id: str
    message_id: str
    user_id: str
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    model: str | None = None


class DeployJobPayload(BaseModel):
    project_id: str
    user_id: str
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))


class MarketingJobPayload(BaseModel):
    project_id: str
    deployment_url: str


class Job(BaseModel):
    """A unit of queued work, owned by the queue until a worker claims it."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: JobType
    payload: dict[str, Any]
    attempts: int = 0
    max_attempts: int = 1
    timeout: float = 300.0
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: JobStatus = JobStatus.QUEUED
    last_error: str | None = None

    @property
    def project_id(self) -> str | None:
        return self.payload.get("project_id")
