"""Bounded validate-and-repair loop for iterated code.

Each round asks for a fix of exactly the files named by the current error
list, applies whatever comes back, then re-validates the *whole* file set.
The next round works from that fresh error list, so a file broken by a
previous fix becomes eligible for repair even if it was clean before.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from .client import CodeGenerationService, RequestMeta
from .schemas import GeneratedFile, ValidationIssue, group_by_file
from .validator import SourceFile, validate_files

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 3


@dataclass
class AutoFixOutcome:
    files: list[GeneratedFile]
    iterations: int
    remaining_errors: list[ValidationIssue]
    fixed_paths: set[str] = field(default_factory=set)
    aborted_error: str | None = None

    @property
    def resolved(self) -> bool:
        return not self.remaining_errors

    def describe_remaining(self) -> list[str]:
        return [
            f"{e.file}{f':{e.line}' if e.line else ''}: {e.message}" for e in self.remaining_errors
        ]


async def run_autofix_loop(
    service: CodeGenerationService,
    files: Sequence[SourceFile],
    errors: list[ValidationIssue],
    meta: RequestMeta,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    apply: Callable[[GeneratedFile], Awaitable[Any]] | None = None,
) -> AutoFixOutcome:
    """Repair ``errors`` in ``files`` for at most ``max_iterations`` rounds.

    Args:
        service: Code generation service used for ``fix`` calls.
        files: The complete current file set.
        errors: Validation errors to start from.
        meta: Request attribution.
        max_iterations: Hard upper bound on fix rounds.
        apply: Called with every returned file, e.g. to persist it.

    Returns:
        The final file set and whatever errors are still outstanding. A failing
        ``fix`` call ends the loop early with ``aborted_error`` set.
    """
    current = {
        f.path: GeneratedFile(path=f.path, content=f.content, language=getattr(f, "language", None))
        for f in files
    }
    outcome = AutoFixOutcome(files=[], iterations=0, remaining_errors=list(errors))

    while outcome.remaining_errors and outcome.iterations < max_iterations:
        outcome.iterations += 1
        grouped = group_by_file(outcome.remaining_errors)
        affected = [current[path] for path in grouped if path in current]

        logger.info(
            "autofix_round_started",
            project_id=meta.project_id,
            iteration=outcome.iterations,
            error_count=len(outcome.remaining_errors),
            affected_files=sorted(grouped),
        )

        try:
            result = await service.fix(outcome.remaining_errors, affected, list(current.values()), meta)
        except Exception as e:
            logger.warning(
                "autofix_call_failed",
                project_id=meta.project_id,
                iteration=outcome.iterations,
                error=str(e),
                error_type=type(e).__name__,
            )
            outcome.aborted_error = str(e) or type(e).__name__
            break

        for file in result.files:
            current[file.path] = file
            outcome.fixed_paths.add(file.path)
            if apply is not None:
                await apply(file)

        outcome.remaining_errors = validate_files(list(current.values())).errors

    outcome.files = list(current.values())
    logger.info(
        "autofix_finished",
        project_id=meta.project_id,
        iterations=outcome.iterations,
        resolved=outcome.resolved,
        remaining=len(outcome.remaining_errors),
        aborted=outcome.aborted_error is not None,
    )
    return outcome
