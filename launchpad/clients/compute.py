"""Compute platform adapter (Railway GraphQL API)."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
import structlog

from ..errors import DeploymentTimeoutError, RemoteServiceError
from ..resilience import CircuitBreaker, RetryPolicy
from .base import HTTPAdapter

logger = structlog.get_logger(__name__)


class RemoteStatus(str, Enum):
    QUEUED = "queued"
    BUILDING = "building"
    SUCCESS = "success"
    FAILED = "failed"
    CRASHED = "crashed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in (RemoteStatus.SUCCESS, RemoteStatus.FAILED, RemoteStatus.CRASHED)


_RAILWAY_STATUSES = {
    "SUCCESS": RemoteStatus.SUCCESS,
    "FAILED": RemoteStatus.FAILED,
    "CRASHED": RemoteStatus.CRASHED,
    "REMOVED": RemoteStatus.FAILED,
    "CANCELLED": RemoteStatus.FAILED,
    "BUILDING": RemoteStatus.BUILDING,
    "DEPLOYING": RemoteStatus.BUILDING,
    "INITIALIZING": RemoteStatus.BUILDING,
}


def normalize_status(raw: str | None) -> RemoteStatus:
    return _RAILWAY_STATUSES.get((raw or "").upper(), RemoteStatus.QUEUED)


@dataclass
class ComputeService:
    id: str
    environment_id: str | None


@dataclass
class RemoteDeployment:
    status: RemoteStatus
    url: str | None = None
    deployment_id: str | None = None
    raw_status: str | None = None


StatusCallback = Callable[[RemoteDeployment, float], Awaitable[None]]


class ComputePlatform(ABC):
    """Where built apps run."""

    @abstractmethod
    async def create_project(self, name: str) -> str: ...

    @abstractmethod
    async def create_service(self, project_id: str, name: str) -> ComputeService: ...

    @abstractmethod
    async def get_environment_id(self, project_id: str, service_id: str) -> str | None: ...

    @abstractmethod
    async def set_env_vars(
        self, project_id: str, environment_id: str, service_id: str, variables: dict[str, str]
    ) -> None: ...

    @abstractmethod
    async def connect_source_repo(
        self, project_id: str, service_id: str, repo_full_name: str, branch: str = "main"
    ) -> None: ...

    @abstractmethod
    async def trigger_deploy(self, project_id: str, service_id: str, environment_id: str | None) -> None: ...

    @abstractmethod
    async def allocate_domain(self, service_id: str, environment_id: str | None) -> str | None: ...

    @abstractmethod
    async def get_status(self, project_id: str, service_id: str) -> RemoteDeployment: ...

    async def wait_for_deployment(
        self,
        project_id: str,
        service_id: str,
        timeout: float = 600.0,
        interval: float = 10.0,
        on_status: StatusCallback | None = None,
    ) -> RemoteDeployment:
        """Poll until the deployment reaches a terminal status.

        Raises:
            DeploymentTimeoutError: No terminal status within ``timeout`` seconds.
        """
        loop = asyncio.get_running_loop()
        start = loop.time()
        while True:
            status = await self.get_status(project_id, service_id)
            elapsed = loop.time() - start
            if on_status is not None:
                await on_status(status, elapsed)
            if status.status.is_terminal:
                return status
            if elapsed + interval > timeout:
                raise DeploymentTimeoutError(
                    f"Deployment did not finish within {int(timeout)}s (last status: {status.status.value})"
                )
            await asyncio.sleep(interval)


_ENVIRONMENTS_QUERY = """
query($projectId: String!) {
  project(id: $projectId) {
    environments { edges { node { id name } } }
  }
}
"""

_SERVICES_QUERY = """
query($projectId: String!) {
  project(id: $projectId) {
    services {
      edges {
        node {
          id
          serviceInstances {
            edges {
              node {
                domains { serviceDomains { domain } customDomains { domain } }
                latestDeployment { id status createdAt }
              }
            }
          }
        }
      }
    }
  }
}
"""


class RailwayClient(HTTPAdapter, ComputePlatform):
    """GraphQL client for Railway."""

    def __init__(
        self,
        api_url: str,
        api_token: str,
        timeout: float = 30.0,
        breaker: CircuitBreaker | None = None,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            api_url,
            headers={"Authorization": f"Bearer {api_token}"},
            timeout=timeout,
            breaker=breaker,
            retry=retry,
            transport=transport,
        )
        if not api_token:
            logger.warning("railway_token_missing")

    async def _gql_once(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.post(self.base_url, json={"query": query, "variables": variables})
        resp.raise_for_status()
        body = resp.json()
        if body.get("errors"):
            message = "; ".join(e.get("message", "unknown error") for e in body["errors"])
            logger.error("railway_graphql_error", errors=body["errors"])
            raise RemoteServiceError(f"Railway API error: {message}")
        return body.get("data") or {}

    async def _query(self, query: str, **variables: Any) -> dict[str, Any]:
        return await self._call("railway-gql", self._gql_once, query, variables)

    async def create_project(self, name: str) -> str:
        data = await self._query(
            "mutation($input: ProjectCreateInput!) { projectCreate(input: $input) { id name } }",
            input={"name": name, "description": f"Launchpad app: {name}"},
        )
        project_id = data["projectCreate"]["id"]
        logger.info("compute_project_created", compute_project_id=project_id, name=name)
        return project_id

    async def _environments(self, project_id: str) -> list[dict[str, Any]]:
        data = await self._query(_ENVIRONMENTS_QUERY, projectId=project_id)
        edges = ((data.get("project") or {}).get("environments") or {}).get("edges") or []
        return [edge["node"] for edge in edges]

    async def get_environment_id(self, project_id: str, service_id: str) -> str | None:
        environments = await self._environments(project_id)
        production = next((env for env in environments if env.get("name") == "production"), None)
        chosen = production or (environments[0] if environments else None)
        return chosen["id"] if chosen else None

    async def create_service(self, project_id: str, name: str) -> ComputeService:
        environment_id = await self.get_environment_id(project_id, "")
        if not environment_id:
            raise RemoteServiceError("No environment found in compute project")

        data = await self._query(
            "mutation($input: ServiceCreateInput!) { serviceCreate(input: $input) { id name } }",
            input={"projectId": project_id, "name": name},
        )
        service = ComputeService(id=data["serviceCreate"]["id"], environment_id=environment_id)
        logger.info(
            "compute_service_created",
            compute_project_id=project_id,
            service_id=service.id,
            environment_id=environment_id,
        )
        return service

    async def set_env_vars(
        self, project_id: str, environment_id: str, service_id: str, variables: dict[str, str]
    ) -> None:
        await self._query(
            "mutation($input: VariableCollectionUpsertInput!) { variableCollectionUpsert(input: $input) }",
            input={
                "projectId": project_id,
                "environmentId": environment_id,
                "serviceId": service_id,
                "variables": variables,
            },
        )
        logger.info("compute_env_vars_set", compute_project_id=project_id, var_count=len(variables))

    async def connect_source_repo(
        self, project_id: str, service_id: str, repo_full_name: str, branch: str = "main"
    ) -> None:
        await self._query(
            "mutation($input: ServiceConnectInput!) { serviceConnect(input: $input) { id } }",
            input={"id": service_id, "projectId": project_id, "repo": repo_full_name, "branch": branch},
        )
        logger.info("compute_repo_connected", compute_project_id=project_id, repo=repo_full_name)

    async def trigger_deploy(self, project_id: str, service_id: str, environment_id: str | None) -> None:
        await self._query(
            "mutation($serviceId: String!, $environmentId: String!) "
            "{ serviceInstanceDeploy(serviceId: $serviceId, environmentId: $environmentId) }",
            serviceId=service_id,
            environmentId=environment_id,
        )
        logger.info("compute_deploy_triggered", compute_project_id=project_id, service_id=service_id)

    async def allocate_domain(self, service_id: str, environment_id: str | None) -> str | None:
        data = await self._query(
            "mutation($input: ServiceDomainCreateInput!) { serviceDomainCreate(input: $input) { domain } }",
            input={"serviceId": service_id, "environmentId": environment_id},
        )
        domain = (data.get("serviceDomainCreate") or {}).get("domain")
        logger.info("compute_domain_allocated", service_id=service_id, domain=domain)
        return f"https://{domain}" if domain else None

    async def get_status(self, project_id: str, service_id: str) -> RemoteDeployment:
        data = await self._query(_SERVICES_QUERY, projectId=project_id)
        edges = ((data.get("project") or {}).get("services") or {}).get("edges") or []
        service = next((edge["node"] for edge in edges if edge["node"]["id"] == service_id), None)
        if service is None:
            return RemoteDeployment(status=RemoteStatus.QUEUED, raw_status="not_found")

        instances = (service.get("serviceInstances") or {}).get("edges") or []
        instance = instances[0]["node"] if instances else {}
        deployment = instance.get("latestDeployment") or {}
        domains = instance.get("domains") or {}
        names = [d["domain"] for d in (domains.get("serviceDomains") or []) + (domains.get("customDomains") or [])]

        return RemoteDeployment(
            status=normalize_status(deployment.get("status")),
            url=f"https://{names[0]}" if names else None,
            deployment_id=deployment.get("id"),
            raw_status=deployment.get("status"),
        )
