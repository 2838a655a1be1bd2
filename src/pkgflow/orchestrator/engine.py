"""Workflow engine driving one pipeline execution per work item."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from pkgflow.orchestrator.errors import InfrastructureError, StartRejectedError
from pkgflow.orchestrator.failure_router import FailureRouter
from pkgflow.orchestrator.invoker import TaskInvoker, TaskSucceeded
from pkgflow.orchestrator.models import (
    BRANCH_RETRY_POLICY,
    CATALOG_RETRY_POLICY,
    BranchResult,
    CatalogUpdateResult,
    Cause,
    ExecutionContext,
    ExecutionDocument,
    ExecutionOutcome,
    ExecutionStatus,
    FailureKind,
    PipelineState,
    RetryPolicy,
    WorkItem,
)
from pkgflow.orchestrator.repository import ExecutionRepository
from pkgflow.orchestrator.state_machine import TERMINAL_STATES, PipelineEvent, next_state
from pkgflow.storage.common import utc_now

logger = logging.getLogger(__name__)

BRANCH_TASK_PREFIX = "docgen-"
CATALOG_UPDATE_TASK_ID = "catalog-update"

StageHandler = Callable[[ExecutionDocument], Awaitable[PipelineEvent]]


def branch_task_id(variant: str) -> str:
    return f"{BRANCH_TASK_PREFIX}{variant}"


class ExecutionHandle:
    """Acknowledgment of a started execution."""

    def __init__(
        self,
        *,
        execution_id: str,
        name: str,
        task: asyncio.Task[ExecutionOutcome],
    ) -> None:
        self.execution_id = execution_id
        self.name = name
        self._task = task

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> ExecutionOutcome:
        """Wait for the terminal outcome; cancelling the waiter leaves the execution running."""

        return await asyncio.shield(self._task)


class WorkflowEngine:
    """Runs the Init -> FanOut -> Aggregate -> CatalogUpdate -> DlqCheck pipeline.

    Each execution is an asyncio task. Variant branches run concurrently and
    are joined before aggregation; a failed branch never aborts its siblings.
    Catalog updates are serialized across all executions of this engine by a
    semaphore sized by ``catalog_concurrency``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        invoker: TaskInvoker,
        executions: ExecutionRepository,
        failure_router: FailureRouter,
        variants: Sequence[str],
        branch_policy: RetryPolicy = BRANCH_RETRY_POLICY,
        catalog_policy: RetryPolicy = CATALOG_RETRY_POLICY,
        execution_timeout_seconds: float = 3_600.0,
        catalog_concurrency: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not variants:
            raise ValueError("At least one variant must be configured.")
        if len(set(variants)) != len(variants):
            raise ValueError(f"Variants must be unique, got {list(variants)}.")
        if execution_timeout_seconds <= 0:
            raise ValueError("Execution timeout must be > 0 seconds.")
        if catalog_concurrency < 1:
            raise ValueError("Catalog update concurrency must be >= 1.")

        self.invoker = invoker
        self.executions = executions
        self.failure_router = failure_router
        self.variants = tuple(variants)
        self.branch_policy = branch_policy
        self.catalog_policy = catalog_policy
        self.execution_timeout_seconds = execution_timeout_seconds
        self._clock = clock
        self._catalog_guard = asyncio.Semaphore(catalog_concurrency)
        self._inflight: dict[str, asyncio.Task[ExecutionOutcome]] = {}
        self._closed = False
        self._handlers: dict[PipelineState, StageHandler] = {
            PipelineState.INIT: self._init,
            PipelineState.FAN_OUT: self._fan_out,
            PipelineState.AGGREGATE: self._aggregate,
            PipelineState.CATALOG_UPDATE: self._catalog_update,
            PipelineState.DLQ_CHECK: self._dlq_check,
        }

    async def start(
        self,
        work_item: WorkItem,
        *,
        role: str = "api",
        name: str | None = None,
    ) -> ExecutionHandle:
        """Record a new execution and schedule it; returns once it is durably started."""

        if self._closed:
            raise StartRejectedError("Engine is closed; no new executions are accepted.")
        try:
            validated = WorkItem.from_payload(work_item.to_payload())
        except ValueError as error:
            raise StartRejectedError(str(error)) from error

        execution_id = str(uuid4())
        context = ExecutionContext(
            execution_id=execution_id,
            name=name or f"{validated.package}-{validated.version}-{execution_id[:8]}",
            role=role,
            start_time=self._clock(),
            timeout_seconds=int(self.execution_timeout_seconds),
        )
        try:
            self.executions.create_execution(context=context, work_item=validated)
        except SQLAlchemyError as error:
            raise StartRejectedError(
                f"Failed to record execution for {validated.coordinate}: {error}",
            ) from error

        document = ExecutionDocument(
            work_item=validated,
            original_input=validated.to_payload(),
            context=context,
        )
        task = asyncio.create_task(self._run(document), name=f"execution-{execution_id}")
        self._inflight[execution_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(execution_id, None))
        logger.info(
            "Started execution %s (%s) for %s",
            execution_id,
            role,
            validated.coordinate,
        )
        return ExecutionHandle(execution_id=execution_id, name=context.name, task=task)

    async def drain(self) -> list[ExecutionOutcome | BaseException]:
        """Wait for every in-flight execution, including ones started while waiting."""

        outcomes: list[ExecutionOutcome | BaseException] = []
        seen: set[str] = set()
        while True:
            pending = [task for key, task in self._inflight.items() if key not in seen]
            if not pending:
                return outcomes
            seen.update(self._inflight)
            outcomes.extend(await asyncio.gather(*pending, return_exceptions=True))

    def close(self) -> None:
        self._closed = True

    async def _run(self, document: ExecutionDocument) -> ExecutionOutcome:
        try:
            state = await self._drive(document)
            if state == PipelineState.FAILED:
                return self._finish_failed(document)
            return self._finish_succeeded(document)
        except InfrastructureError:
            raise
        except Exception as error:
            raise self._abort(document, error) from error

    async def _drive(self, document: ExecutionDocument) -> PipelineState:
        state = PipelineState.INIT
        try:
            async with asyncio.timeout(self.execution_timeout_seconds):
                while state not in TERMINAL_STATES:
                    event = await self._handlers[state](document)
                    state = self._advance(document, state, event)
        except TimeoutError:
            document.error = Cause(
                kind=FailureKind.TIMEOUT.value,
                message=(
                    f"Execution exceeded its {self.execution_timeout_seconds:g}s budget "
                    f"during {state.value}."
                ),
            )
            state = self._advance(document, state, PipelineEvent.TIMED_OUT)
        return state

    def _abort(self, document: ExecutionDocument, error: Exception) -> InfrastructureError:
        """Mark an execution whose bookkeeping broke down as an infrastructure error."""

        execution_id = document.context.execution_id
        logger.critical(
            "Execution %s aborted in %s, operator attention required: %s: %s",
            execution_id,
            document.context.current_stage.value,
            type(error).__name__,
            error,
        )
        cause = Cause(
            kind=FailureKind.INFRASTRUCTURE.value,
            message=f"{type(error).__name__}: {error}",
        )
        # Fall back to the bare task input when branch output cannot be stored.
        for snapshot in (document.to_payload, document.task_input):
            try:
                self.executions.finish_execution(
                    execution_id=execution_id,
                    status=ExecutionStatus.INFRASTRUCTURE_ERROR,
                    document=snapshot(),
                    cause=cause,
                )
                break
            except (TypeError, ValueError):
                continue
            except SQLAlchemyError:
                logger.exception("Execution %s could not be marked as failed", execution_id)
                break
        return InfrastructureError(f"Execution {execution_id} aborted: {cause.message}")

    def _advance(
        self,
        document: ExecutionDocument,
        state: PipelineState,
        event: PipelineEvent,
    ) -> PipelineState:
        target = next_state(state, event)
        document.context.current_stage = target
        self.executions.record_transition(
            execution_id=document.context.execution_id,
            stage_from=state,
            stage_to=target,
            event_type=event.value,
        )
        logger.debug(
            "Execution %s: %s --%s--> %s",
            document.context.execution_id,
            state.value,
            event.value,
            target.value,
        )
        return target

    async def _init(self, document: ExecutionDocument) -> PipelineEvent:
        # The context is attached when the document is built in start().
        logger.debug(
            "Execution %s initialized as %s",
            document.context.execution_id,
            document.context.name,
        )
        return PipelineEvent.INITIALIZED

    async def _fan_out(self, document: ExecutionDocument) -> PipelineEvent:
        results = await asyncio.gather(
            *(self._run_branch(document, variant) for variant in self.variants),
        )
        document.branch_results = list(results)
        return PipelineEvent.BRANCHES_JOINED

    async def _run_branch(self, document: ExecutionDocument, variant: str) -> BranchResult:
        payload = document.task_input()
        payload["variant"] = variant
        result = await self.invoker.invoke(branch_task_id(variant), payload, self.branch_policy)
        if isinstance(result, TaskSucceeded):
            return BranchResult.succeeded(variant, result.payload)
        logger.warning(
            "Execution %s branch %s failed with %s: %s",
            document.context.execution_id,
            variant,
            result.cause.kind,
            result.cause.message,
        )
        return BranchResult.failed(variant, result.cause)

    async def _aggregate(self, document: ExecutionDocument) -> PipelineEvent:
        if any(result.ok for result in document.branch_results):
            return PipelineEvent.ANY_SUCCEEDED
        return PipelineEvent.NONE_SUCCEEDED

    async def _catalog_update(self, document: ExecutionDocument) -> PipelineEvent:
        async with self._catalog_guard:
            result = await self.invoker.invoke(
                CATALOG_UPDATE_TASK_ID,
                document.to_payload(),
                self.catalog_policy,
            )
        if isinstance(result, TaskSucceeded):
            document.catalog_update = CatalogUpdateResult.from_payload(result.payload)
            return PipelineEvent.CATALOG_UPDATED
        document.error = result.cause
        return PipelineEvent.CATALOG_UPDATE_FAILED

    async def _dlq_check(self, document: ExecutionDocument) -> PipelineEvent:
        failed = [result for result in document.branch_results if result.error is not None]
        if not failed:
            return PipelineEvent.NO_BRANCH_ERRORS
        document.error = Cause(
            kind=FailureKind.BRANCH_FAILURE.value,
            message="; ".join(
                f"{result.variant}: {result.error.kind}: {result.error.message}"
                for result in failed
                if result.error is not None
            ),
        )
        return PipelineEvent.BRANCH_ERRORS

    def _finish_failed(self, document: ExecutionDocument) -> ExecutionOutcome:
        execution_id = document.context.execution_id
        cause = document.error or Cause(
            kind=FailureKind.TASK_FAILURE.value,
            message="Execution failed without a recorded cause.",
        )
        try:
            self.failure_router.route(document, cause)
        except InfrastructureError as error:
            logger.critical(
                "Execution %s could not be dead-lettered, operator attention required: %s",
                execution_id,
                error,
            )
            self.executions.finish_execution(
                execution_id=execution_id,
                status=ExecutionStatus.INFRASTRUCTURE_ERROR,
                document=document.to_payload(),
                cause=Cause(kind=FailureKind.INFRASTRUCTURE.value, message=str(error)),
            )
            raise

        payload = document.to_payload()
        self.executions.finish_execution(
            execution_id=execution_id,
            status=ExecutionStatus.FAILED,
            document=payload,
            cause=cause,
        )
        return ExecutionOutcome(
            execution_id=execution_id,
            status=ExecutionStatus.FAILED,
            cause=cause,
            document=payload,
        )

    def _finish_succeeded(self, document: ExecutionDocument) -> ExecutionOutcome:
        execution_id = document.context.execution_id
        payload = document.to_payload()
        self.executions.finish_execution(
            execution_id=execution_id,
            status=ExecutionStatus.SUCCEEDED,
            document=payload,
            cause=None,
        )
        logger.info(
            "Execution %s for %s succeeded",
            execution_id,
            document.work_item.coordinate,
        )
        return ExecutionOutcome(
            execution_id=execution_id,
            status=ExecutionStatus.SUCCEEDED,
            cause=None,
            document=payload,
        )
