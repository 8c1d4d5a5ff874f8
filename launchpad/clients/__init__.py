"""Adapters for the external platforms a deployment touches."""

from .compute import ComputePlatform, ComputeService, RailwayClient, RemoteDeployment, RemoteStatus
from .edge import CloudflareClient, EdgeRouter
from .source_control import GitHubSourceControl, PullResult, PushResult, SourceControl

__all__ = [
    "CloudflareClient",
    "ComputePlatform",
    "ComputeService",
    "EdgeRouter",
    "GitHubSourceControl",
    "PullResult",
    "PushResult",
    "RailwayClient",
    "RemoteDeployment",
    "RemoteStatus",
    "SourceControl",
]
