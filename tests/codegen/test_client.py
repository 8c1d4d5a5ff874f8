import json

import httpx
import pytest
import respx

from launchpad.codegen.client import HTTPCodeGenerationClient, RequestMeta, parse_json_response
from launchpad.codegen.schemas import FileAction, FileSpec, Requirements
from launchpad.errors import CircuitOpenError, UnsupportedModeError
from launchpad.resilience import CircuitBreaker, RetryPolicy

BASE_URL = "http://codegen.test"


@pytest.fixture
async def client():
    client = HTTPCodeGenerationClient(
        BASE_URL, api_key="secret-key", retry=RetryPolicy(max_retries=2, base_delay=0, jitter=0)
    )
    yield client
    await client.close()


@pytest.fixture
def meta():
    return RequestMeta(project_id="project-1", user_id="user-1", correlation_id="corr-1", model="large")


def test_parse_json_response_strips_fences_and_chatter():
    assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_response('Here you go:\n{"files": []}\nHope this helps!') == {"files": []}
    assert parse_json_response("[1, 2]") == [1, 2]

    with pytest.raises(ValueError, match="no object found"):
        parse_json_response("no json here")


@pytest.mark.asyncio
async def test_analyze_sends_meta_and_parses_requirements(client, meta):
    async with respx.mock(base_url=BASE_URL) as respx_mock:
        route = respx_mock.post("/v1/requirements").mock(
            return_value=httpx.Response(
                200,
                json={"appName": "Todo", "pages": ["Home"], "envVarsNeeded": ["API_KEY"]},
            )
        )

        requirements = await client.analyze("Build a todo app", "", meta)

        assert route.called
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer secret-key"
        body = json.loads(request.content)
        assert body["message"] == "Build a todo app"
        assert body["meta"] == {
            "projectId": "project-1",
            "userId": "user-1",
            "correlationId": "corr-1",
            "model": "large",
        }

    assert requirements.app_name == "Todo"
    assert requirements.framework == "react"
    assert requirements.env_vars_needed == ["API_KEY"]


@pytest.mark.asyncio
async def test_raw_model_content_is_parsed(client, meta):
    content = '```json\n{"files": [{"path": "src/App.jsx", "content": "x", "action": "delete"}], "summary": "ok"}\n```'

    async with respx.mock(base_url=BASE_URL) as respx_mock:
        respx_mock.post("/v1/iterations").mock(return_value=httpx.Response(200, json={"content": content}))

        result = await client.iterate("remove app", [], Requirements(), "", meta)

    assert result.summary == "ok"
    assert result.changed_files[0].action is FileAction.DELETE


@pytest.mark.asyncio
async def test_generate_falls_back_to_spec_language(client, meta):
    spec = FileSpec(path="src/App.jsx", description="Root component", language="jsx")

    async with respx.mock(base_url=BASE_URL) as respx_mock:
        route = respx_mock.post("/v1/files").mock(
            return_value=httpx.Response(200, json={"path": "src/App.jsx", "content": "export default App;"})
        )

        file = await client.generate(Requirements(), spec, [], "", meta)

        assert json.loads(route.calls.last.request.content)["fileSpec"]["path"] == "src/App.jsx"

    assert file.language == "jsx"


@pytest.mark.asyncio
async def test_transient_errors_are_retried(client, meta):
    async with respx.mock(base_url=BASE_URL) as respx_mock:
        route = respx_mock.post("/v1/context").mock(
            side_effect=[
                httpx.Response(503),
                httpx.Response(200, json={"context": "# Todo"}),
            ]
        )

        context = await client.summarize_context("Todo", [], [], meta)

        assert route.call_count == 2
    assert context == "# Todo"


@pytest.mark.asyncio
async def test_agent_session_not_found_means_unsupported(client, meta):
    async with respx.mock(base_url=BASE_URL) as respx_mock:
        respx_mock.post("/v1/agent-sessions").mock(return_value=httpx.Response(404))

        with pytest.raises(UnsupportedModeError):
            await client.agent_session("add a footer", [], "", meta)


@pytest.mark.asyncio
async def test_client_errors_propagate(client, meta):
    async with respx.mock(base_url=BASE_URL) as respx_mock:
        route = respx_mock.post("/v1/scaffold").mock(return_value=httpx.Response(400, json={"error": "bad"}))

        with pytest.raises(httpx.HTTPStatusError):
            await client.scaffold(Requirements(), meta)

        assert route.call_count == 1


@pytest.mark.asyncio
async def test_open_breaker_short_circuits_requests(meta):
    breaker = CircuitBreaker("codegen", failure_threshold=2, call_timeout=None)
    client = HTTPCodeGenerationClient(
        BASE_URL, breaker=breaker, retry=RetryPolicy(max_retries=0, base_delay=0, jitter=0)
    )
    try:
        async with respx.mock(base_url=BASE_URL) as respx_mock:
            route = respx_mock.post("/v1/context").mock(return_value=httpx.Response(503))

            for _ in range(2):
                with pytest.raises(httpx.HTTPStatusError):
                    await client.summarize_context("Todo", [], [], meta)
            with pytest.raises(CircuitOpenError):
                await client.summarize_context("Todo", [], [], meta)

            assert route.call_count == 2
            assert "Authorization" not in route.calls.last.request.headers
    finally:
        await client.close()
