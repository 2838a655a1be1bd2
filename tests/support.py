"""In-process task fakes shared by the pipeline tests."""

from __future__ import annotations

import asyncio
import shlex
import sys
from collections.abc import Sequence
from typing import Any

from pkgflow.orchestrator.dead_letter import DeadLetterQueue
from pkgflow.orchestrator.engine import CATALOG_UPDATE_TASK_ID, WorkflowEngine, branch_task_id
from pkgflow.orchestrator.failure_router import FailureRouter
from pkgflow.orchestrator.invoker import TaskInvoker
from pkgflow.orchestrator.repository import ExecutionRepository
from pkgflow.storage.database import PipelineDatabase

VARIANTS = ("python", "typescript")

_ECHO_TASK = f"{shlex.quote(sys.executable)} -m pkgflow.orchestrator.echo_task"
ECHO_TASK_COMMAND_TEMPLATE = (
    f"{_ECHO_TASK} --input {{input_file}} --output {{output_file}} --variant {{variant}}"
)
ECHO_CATALOG_COMMAND_TEMPLATE = f"{_ECHO_TASK} --input {{input_file}} --output {{output_file}}"


class ScriptedTask:
    """Returns or raises scripted outcomes in order; the last one repeats."""

    def __init__(self, *outcomes: dict[str, Any] | BaseException, delay: float = 0.0) -> None:
        if not outcomes:
            raise ValueError("ScriptedTask needs at least one outcome.")
        self.outcomes = list(outcomes)
        self.delay = delay
        self.payloads: list[dict[str, Any]] = []

    @property
    def calls(self) -> int:
        return len(self.payloads)

    async def invoke(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.payloads.append(payload)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return dict(outcome)


class ConcurrencyProbe:
    """Catalog fake that records how many invocations overlap."""

    def __init__(self, *, hold_seconds: float = 0.01) -> None:
        self.hold_seconds = hold_seconds
        self.active = 0
        self.peak = 0

    async def invoke(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.hold_seconds)
        finally:
            self.active -= 1
        return {"etag": "probe", "versionId": "v1"}


class RecordingSleep:
    """Async sleep replacement that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def ok_branch(variant: str) -> dict[str, Any]:
    return {"variant": variant, "artifacts": [f"docs/{variant}/index.html"]}


def build_tasks(
    *,
    python: ScriptedTask | None = None,
    typescript: ScriptedTask | None = None,
    catalog: Any = None,
) -> dict[str, Any]:
    return {
        branch_task_id("python"): python or ScriptedTask(ok_branch("python")),
        branch_task_id("typescript"): typescript or ScriptedTask(ok_branch("typescript")),
        CATALOG_UPDATE_TASK_ID: catalog or ScriptedTask({"etag": "etag-1", "versionId": "ver-1"}),
    }


class EngineHarness:
    """Engine plus the repositories it writes to."""

    def __init__(  # noqa: PLR0913
        self,
        database: PipelineDatabase,
        tasks: dict[str, Any],
        *,
        sleep: RecordingSleep | None = None,
        variants: Sequence[str] = VARIANTS,
        execution_timeout_seconds: float = 3_600.0,
    ) -> None:
        self.sleep = sleep or RecordingSleep()
        self.executions = ExecutionRepository(database.engine)
        self.dead_letters = DeadLetterQueue(database.engine)
        self.router = FailureRouter(self.dead_letters)
        self.engine = WorkflowEngine(
            invoker=TaskInvoker(tasks, sleep=self.sleep),
            executions=self.executions,
            failure_router=self.router,
            variants=variants,
            execution_timeout_seconds=execution_timeout_seconds,
        )
