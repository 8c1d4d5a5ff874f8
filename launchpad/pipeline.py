"""Explicit stage lists for the build, iterate and deploy state machines.

A job is an ordered list of ``Stage`` units. Each stage transforms a context
object and, when it finishes, the runner reports the stage's target progress.
Stages may report finer-grained progress themselves; the reporter keeps the
overall sequence non-decreasing.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

import structlog

if TYPE_CHECKING:
    from .progress import ProgressReporter

logger = structlog.get_logger(__name__)

C = TypeVar("C")


@dataclass(frozen=True)
class Stage(Generic[C]):
    name: str
    progress: int
    run: Callable[[C], Awaitable[C]]
    message: str | Callable[[C], str] = ""
    start_progress: int | None = None
    start_message: str = ""


async def run_stages(stages: Sequence[Stage[C]], ctx: C, reporter: ProgressReporter) -> C:
    """Run ``stages`` in order, reporting progress at each boundary."""
    for stage in stages:
        if stage.start_progress is not None:
            await reporter.report(stage.start_progress, stage.name, stage.start_message)
        logger.debug("stage_started", stage=stage.name)
        ctx = await stage.run(ctx)
        message = stage.message(ctx) if callable(stage.message) else stage.message
        await reporter.report(stage.progress, stage.name, message)
        logger.debug("stage_completed", stage=stage.name, progress=stage.progress)
    return ctx


def stage_names(stages: Sequence[Stage]) -> list[str]:
    return [stage.name for stage in stages]
