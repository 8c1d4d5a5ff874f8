import json

import httpx
import pytest
import respx

from launchpad.clients import RailwayClient, RemoteDeployment, RemoteStatus
from launchpad.clients.compute import normalize_status
from launchpad.errors import DeploymentTimeoutError, RemoteServiceError
from launchpad.resilience import RetryPolicy
from tests.mocks.platforms import MockComputePlatform

API_URL = "https://railway.test/graphql/v2"

ENVIRONMENTS = {
    "project": {
        "environments": {
            "edges": [
                {"node": {"id": "env-staging", "name": "staging"}},
                {"node": {"id": "env-prod", "name": "production"}},
            ]
        }
    }
}


def services_payload(status: str | None, domain: str | None = "todo.up.railway.app") -> dict:
    instance = {
        "domains": {"serviceDomains": [{"domain": domain}] if domain else [], "customDomains": []},
        "latestDeployment": {"id": "deploy-9", "status": status, "createdAt": "2024-01-01T00:00:00Z"}
        if status
        else None,
    }
    return {
        "project": {
            "services": {
                "edges": [{"node": {"id": "service-1", "serviceInstances": {"edges": [{"node": instance}]}}}]
            }
        }
    }


class GraphQLStub:
    """Answers Railway operations by matching on the query text."""

    def __init__(self, **answers):
        self.answers = answers
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        for marker, data in self.answers.items():
            if marker in body["query"]:
                return httpx.Response(200, json={"data": data})
        return httpx.Response(200, json={"errors": [{"message": "unexpected query"}]})


@pytest.fixture
async def client():
    client = RailwayClient(API_URL, "railway-token", retry=RetryPolicy(max_retries=0, base_delay=0, jitter=0))
    yield client
    await client.close()


@pytest.mark.parametrize(
    ("raw", "status"),
    [
        ("SUCCESS", RemoteStatus.SUCCESS),
        ("CRASHED", RemoteStatus.CRASHED),
        ("REMOVED", RemoteStatus.FAILED),
        ("DEPLOYING", RemoteStatus.BUILDING),
        ("WAITING", RemoteStatus.QUEUED),
        (None, RemoteStatus.QUEUED),
    ],
)
def test_normalize_status(raw, status):
    assert normalize_status(raw) is status


@pytest.mark.asyncio
async def test_create_project(client):
    stub = GraphQLStub(projectCreate={"projectCreate": {"id": "rw-project-1", "name": "Todo"}})

    async with respx.mock() as respx_mock:
        route = respx_mock.post(API_URL).mock(side_effect=stub)

        project_id = await client.create_project("Todo")

        assert route.calls.last.request.headers["Authorization"] == "Bearer railway-token"

    assert project_id == "rw-project-1"
    assert stub.requests[0]["variables"]["input"]["name"] == "Todo"


@pytest.mark.asyncio
async def test_create_service_uses_production_environment(client):
    stub = GraphQLStub(
        environments=ENVIRONMENTS,
        serviceCreate={"serviceCreate": {"id": "service-1", "name": "Todo"}},
    )

    async with respx.mock() as respx_mock:
        respx_mock.post(API_URL).mock(side_effect=stub)

        service = await client.create_service("rw-project-1", "Todo")

    assert service.id == "service-1"
    assert service.environment_id == "env-prod"


@pytest.mark.asyncio
async def test_allocate_domain_returns_https_url(client):
    stub = GraphQLStub(serviceDomainCreate={"serviceDomainCreate": {"domain": "todo.up.railway.app"}})

    async with respx.mock() as respx_mock:
        respx_mock.post(API_URL).mock(side_effect=stub)

        url = await client.allocate_domain("service-1", "env-prod")

    assert url == "https://todo.up.railway.app"


@pytest.mark.asyncio
async def test_get_status_reads_latest_deployment(client):
    stub = GraphQLStub(services=services_payload("CRASHED"))

    async with respx.mock() as respx_mock:
        respx_mock.post(API_URL).mock(side_effect=stub)

        status = await client.get_status("rw-project-1", "service-1")

    assert status.status is RemoteStatus.CRASHED
    assert status.raw_status == "CRASHED"
    assert status.deployment_id == "deploy-9"
    assert status.url == "https://todo.up.railway.app"


@pytest.mark.asyncio
async def test_get_status_for_unknown_service(client):
    stub = GraphQLStub(services=services_payload("SUCCESS"))

    async with respx.mock() as respx_mock:
        respx_mock.post(API_URL).mock(side_effect=stub)

        status = await client.get_status("rw-project-1", "service-other")

    assert status.status is RemoteStatus.QUEUED
    assert status.raw_status == "not_found"


@pytest.mark.asyncio
async def test_graphql_errors_raise(client):
    async with respx.mock() as respx_mock:
        respx_mock.post(API_URL).mock(
            return_value=httpx.Response(200, json={"errors": [{"message": "Not Authorized"}]})
        )

        with pytest.raises(RemoteServiceError, match="Not Authorized"):
            await client.create_project("Todo")


@pytest.mark.asyncio
async def test_wait_for_deployment_polls_until_terminal(client):
    answers = iter([services_payload("BUILDING"), services_payload("DEPLOYING"), services_payload("SUCCESS")])
    seen = []

    def respond(request):
        return httpx.Response(200, json={"data": next(answers)})

    async def on_status(status: RemoteDeployment, elapsed: float):
        seen.append(status.status)

    async with respx.mock() as respx_mock:
        respx_mock.post(API_URL).mock(side_effect=respond)

        final = await client.wait_for_deployment(
            "rw-project-1", "service-1", timeout=5, interval=0, on_status=on_status
        )

    assert final.status is RemoteStatus.SUCCESS
    assert seen == [RemoteStatus.BUILDING, RemoteStatus.BUILDING, RemoteStatus.SUCCESS]


@pytest.mark.asyncio
async def test_wait_for_deployment_times_out():
    compute = MockComputePlatform(statuses=[RemoteDeployment(status=RemoteStatus.BUILDING)])

    with pytest.raises(DeploymentTimeoutError, match="last status: building"):
        await compute.wait_for_deployment("rw-project-1", "service-1", timeout=0.05, interval=0.02)

    assert len(compute.called("get_status")) >= 2
