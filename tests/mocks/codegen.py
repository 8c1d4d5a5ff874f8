from launchpad.codegen.client import CodeGenerationService, RequestMeta
from launchpad.codegen.schemas import (
    FileSpec,
    FixResult,
    GeneratedFile,
    IterationResult,
    Requirements,
)
from launchpad.errors import UnsupportedModeError


class MockCodeGenerationService(CodeGenerationService):
    """Scripted code generation service for unit tests."""

    def __init__(self, requirements: Requirements | None = None):
        # State
        self.requirements = requirements or Requirements(
            app_name="Todo App",
            description="A simple todo list",
            framework="react",
            pages=["Home"],
            features=["Add todos"],
        )
        self.scaffold_files = [
            GeneratedFile(path="package.json", content='{"name": "todo-app"}', language="json"),
            GeneratedFile(path="index.html", content="<div id='root'></div>", language="html"),
        ]
        self.iteration_result = IterationResult(summary="No changes")
        self.agent_result: IterationResult | None = None
        self.fix_results: list[FixResult] = []
        self.context_summary = "# Todo App\n"
        self.calls: list[str] = []

        # Behavior Configuration
        self.should_fail: bool = False
        self.fail_exception: Exception | None = None
        self.fail_on: set[str] | None = None

    def _check_failure(self, operation: str):
        self.calls.append(operation)
        if self.should_fail and (self.fail_on is None or operation in self.fail_on):
            raise self.fail_exception or RuntimeError("Simulated Failure")

    async def analyze(self, message: str, context: str, meta: RequestMeta) -> Requirements:
        self._check_failure("analyze")
        return self.requirements.model_copy(deep=True)

    async def scaffold(self, requirements: Requirements, meta: RequestMeta) -> list[GeneratedFile]:
        self._check_failure("scaffold")
        return list(self.scaffold_files)

    async def generate(self, requirements, spec: FileSpec, existing_files, context, meta) -> GeneratedFile:
        self._check_failure("generate")
        return GeneratedFile(
            path=spec.path,
            content=f"// {spec.description}\nexport default function Component() {{ return null; }}\n",
            language=spec.language,
        )

    async def generate_batch(self, requirements, specs: list[FileSpec], context, meta) -> list[GeneratedFile]:
        self._check_failure("generate_batch")
        return [GeneratedFile(path=s.path, content=f"# {s.description}\n", language=s.language) for s in specs]

    async def iterate(self, message, files, requirements, context, meta) -> IterationResult:
        self._check_failure("iterate")
        return self.iteration_result.model_copy(deep=True)

    async def agent_session(self, message, files, context, meta) -> IterationResult:
        self._check_failure("agent_session")
        if self.agent_result is None:
            raise UnsupportedModeError("agent sessions are not supported")
        return self.agent_result.model_copy(deep=True)

    async def fix(self, errors, affected_files, all_files, meta) -> FixResult:
        self._check_failure("fix")
        if self.fix_results:
            return self.fix_results.pop(0)
        return FixResult()

    async def summarize_context(self, project_name, messages, files, meta) -> str:
        self._check_failure("summarize_context")
        return self.context_summary
