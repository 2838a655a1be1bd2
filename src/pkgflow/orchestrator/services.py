"""Wiring of repositories, the workflow engine and administrative controllers."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass

from pkgflow.config import Settings
from pkgflow.orchestrator.catalog import PackageCatalog
from pkgflow.orchestrator.cleanup import ScratchCleaner
from pkgflow.orchestrator.dead_letter import DeadLetterQueue
from pkgflow.orchestrator.engine import WorkflowEngine
from pkgflow.orchestrator.failure_router import FailureRouter
from pkgflow.orchestrator.invoker import Sleep, TaskCapability, TaskInvoker
from pkgflow.orchestrator.redrive import RedriveController
from pkgflow.orchestrator.repository import ExecutionRepository
from pkgflow.orchestrator.reprocess import ReprocessAllController
from pkgflow.orchestrator.tasks import build_task_registry
from pkgflow.storage.database import PipelineDatabase


@dataclass(slots=True)
class PipelineRuntime:
    """Everything one process needs to run and administer executions."""

    database: PipelineDatabase
    executions: ExecutionRepository
    dead_letters: DeadLetterQueue
    catalog: PackageCatalog
    engine: WorkflowEngine
    redrive: RedriveController
    reprocess: ReprocessAllController
    cleaner: ScratchCleaner


def build_runtime(
    settings: Settings,
    *,
    tasks: Mapping[str, TaskCapability] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> PipelineRuntime:
    """Open the database, apply migrations and wire the pipeline components.

    ``tasks`` replaces the command-template task registry, which tests use to
    plug in in-process fakes.
    """

    database = PipelineDatabase(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    database.init_schema()

    registry = (
        dict(tasks)
        if tasks is not None
        else build_task_registry(
            variants=settings.pipeline.variants,
            task_command_template=settings.tasks.command_template,
            catalog_command_template=settings.tasks.catalog_command_template,
            scratch_root=settings.cleanup.scratch_root,
            timeout_seconds=settings.tasks.timeout_seconds,
        )
    )
    executions = ExecutionRepository(database.engine)
    dead_letters = DeadLetterQueue(database.engine)
    catalog = PackageCatalog(database.engine)
    engine = WorkflowEngine(
        invoker=TaskInvoker(registry, sleep=sleep),
        executions=executions,
        failure_router=FailureRouter(dead_letters),
        variants=settings.pipeline.variants,
        branch_policy=settings.pipeline.branch_policy,
        catalog_policy=settings.pipeline.catalog_policy,
        execution_timeout_seconds=settings.pipeline.execution_timeout_seconds,
        catalog_concurrency=settings.pipeline.catalog_concurrency,
    )
    return PipelineRuntime(
        database=database,
        executions=executions,
        dead_letters=dead_letters,
        catalog=catalog,
        engine=engine,
        redrive=RedriveController(engine=engine, dead_letters=dead_letters),
        reprocess=ReprocessAllController(
            engine=engine,
            catalog=catalog,
            page_size=settings.reprocess_page_size,
        ),
        cleaner=ScratchCleaner(
            scratch_root=settings.cleanup.scratch_root,
            protected_paths=settings.cleanup.effective_protected_paths(),
            min_age_seconds=settings.cleanup.min_age_seconds,
        ),
    )


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    tasks: Mapping[str, TaskCapability] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> Iterator[PipelineRuntime]:
    runtime = build_runtime(settings, tasks=tasks, sleep=sleep)
    try:
        yield runtime
    finally:
        runtime.engine.close()
        runtime.database.close()
