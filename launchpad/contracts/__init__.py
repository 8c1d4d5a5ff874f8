"""Pydantic contracts for queue messages and progress events."""

from .events import PROGRESS_ERROR, ProgressUpdate
from .jobs import (
    BuildJobPayload,
    DeployJobPayload,
    Job,
    JobStatus,
    JobType,
    MarketingJobPayload,
)

__all__ = [
    "PROGRESS_ERROR",
    "BuildJobPayload",
    "DeployJobPayload",
    "Job",
    "JobStatus",
    "JobType",
    "MarketingJobPayload",
    "ProgressUpdate",
]
