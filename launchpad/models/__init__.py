"""Database models."""

from .base import Base
from .cost import CostEntry
from .deployment import Deployment, DeploymentStatus
from .domain import DomainMapping, DomainType
from .file import ProjectFile, ProjectVersion
from .message import Message
from .project import Project, ProjectStatus
from .secret import ProjectSecret, SourceRepoLink

__all__ = [
    "Base",
    "CostEntry",
    "Deployment",
    "DeploymentStatus",
    "DomainMapping",
    "DomainType",
    "Message",
    "Project",
    "ProjectFile",
    "ProjectSecret",
    "ProjectStatus",
    "ProjectVersion",
    "SourceRepoLink",
]
