import pytest

from launchpad.codegen.autofix import run_autofix_loop
from launchpad.codegen.client import RequestMeta
from launchpad.codegen.schemas import FixResult, GeneratedFile
from launchpad.codegen.validator import validate_files
from tests.mocks.codegen import MockCodeGenerationService

BROKEN_APP = "export default function App() {\n  return null;\n"
FIXED_APP = "export default function App() {\n  return null;\n}\n"


@pytest.fixture
def meta():
    return RequestMeta(project_id="project-1", user_id="user-1")


@pytest.fixture
def files():
    return [
        GeneratedFile(path="src/App.jsx", content=BROKEN_APP),
        GeneratedFile(path="src/main.jsx", content="import App from './App';\n"),
    ]


@pytest.mark.asyncio
async def test_single_round_resolves_errors(files, meta):
    service = MockCodeGenerationService()
    service.fix_results = [FixResult(files=[GeneratedFile(path="src/App.jsx", content=FIXED_APP)])]
    applied = []

    async def apply(file):
        applied.append(file.path)

    outcome = await run_autofix_loop(service, files, validate_files(files).errors, meta, apply=apply)

    assert outcome.resolved
    assert outcome.iterations == 1
    assert outcome.fixed_paths == {"src/App.jsx"}
    assert applied == ["src/App.jsx"]
    assert {f.path: f.content for f in outcome.files}["src/App.jsx"] == FIXED_APP


@pytest.mark.asyncio
async def test_loop_is_bounded_when_fixes_do_not_converge(files, meta):
    service = MockCodeGenerationService()
    service.fix_results = [
        FixResult(files=[GeneratedFile(path="src/App.jsx", content=BROKEN_APP)]) for _ in range(5)
    ]

    outcome = await run_autofix_loop(service, files, validate_files(files).errors, meta, max_iterations=3)

    assert outcome.iterations == 3
    assert service.calls.count("fix") == 3
    assert not outcome.resolved
    assert outcome.describe_remaining()[0].startswith("src/App.jsx:")


@pytest.mark.asyncio
async def test_errors_introduced_by_a_fix_are_repaired_next_round(files, meta):
    service = MockCodeGenerationService()
    service.fix_results = [
        FixResult(
            files=[
                GeneratedFile(path="src/App.jsx", content=FIXED_APP),
                GeneratedFile(path="src/util.js", content="export const x = [1, 2;\n"),
            ]
        ),
        FixResult(files=[GeneratedFile(path="src/util.js", content="export const x = [1, 2];\n")]),
    ]

    outcome = await run_autofix_loop(service, files, validate_files(files).errors, meta)

    assert outcome.resolved
    assert outcome.iterations == 2
    assert outcome.fixed_paths == {"src/App.jsx", "src/util.js"}


@pytest.mark.asyncio
async def test_failed_fix_call_aborts_loop(files, meta):
    service = MockCodeGenerationService()
    service.should_fail = True
    service.fail_exception = ConnectionError("codegen unreachable")

    errors = validate_files(files).errors
    outcome = await run_autofix_loop(service, files, errors, meta)

    assert outcome.iterations == 1
    assert outcome.aborted_error == "codegen unreachable"
    assert outcome.remaining_errors == errors


@pytest.mark.asyncio
async def test_no_errors_means_no_fix_calls(meta):
    service = MockCodeGenerationService()
    clean = [GeneratedFile(path="src/App.jsx", content=FIXED_APP)]

    outcome = await run_autofix_loop(service, clean, [], meta)

    assert outcome.iterations == 0
    assert service.calls == []
