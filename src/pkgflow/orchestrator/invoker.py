"""Task invocation with bounded retry policies."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from pkgflow.orchestrator.failure_classifier import cause_from_exception
from pkgflow.orchestrator.models import Cause, FailureKind, RetryPolicy

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class TaskCapability(Protocol):
    """External task body reachable through the invoker."""

    async def invoke(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Run the task once and return its output payload."""


@dataclass(frozen=True, slots=True)
class TaskSucceeded:
    payload: dict[str, Any]
    attempts: int


@dataclass(frozen=True, slots=True)
class TaskFailed:
    cause: Cause
    attempts: int


TaskResult = TaskSucceeded | TaskFailed


class TaskInvoker:
    """Invokes registered task capabilities and applies retry policies.

    Task failures never propagate as exceptions: once retries are exhausted,
    or the failure kind is not retryable, the structured cause is returned as
    ``TaskFailed``. Cancellation is always propagated.
    """

    def __init__(
        self,
        tasks: Mapping[str, TaskCapability],
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.tasks = dict(tasks)
        self._sleep = sleep

    async def invoke(
        self,
        task_id: str,
        payload: Mapping[str, Any],
        policy: RetryPolicy,
    ) -> TaskResult:
        task = self.tasks.get(task_id)
        if task is None:
            return TaskFailed(
                cause=Cause(
                    kind=FailureKind.TASK_FAILURE.value,
                    message=f"No task capability registered for {task_id!r}.",
                ),
                attempts=0,
            )

        attempt = 0
        while True:
            attempt += 1
            try:
                output = await task.invoke(dict(payload))
            except Exception as error:  # noqa: BLE001
                cause = cause_from_exception(error)
                if attempt < policy.max_attempts and policy.retries(cause.kind):
                    delay = policy.delay_for(attempt)
                    logger.warning(
                        "Task %s attempt %d/%d failed with %s, retrying in %.1fs: %s",
                        task_id,
                        attempt,
                        policy.max_attempts,
                        cause.kind,
                        delay,
                        cause.message,
                    )
                    await self._sleep(delay)
                    continue
                logger.info(
                    "Task %s failed after %d attempt(s) with %s: %s",
                    task_id,
                    attempt,
                    cause.kind,
                    cause.message,
                )
                return TaskFailed(cause=cause, attempts=attempt)

            if not isinstance(output, dict):
                return TaskFailed(
                    cause=Cause(
                        kind=FailureKind.TASK_FAILURE.value,
                        message=(
                            f"Task {task_id} returned {type(output).__name__}, expected object."
                        ),
                    ),
                    attempts=attempt,
                )
            try:
                json.dumps(output)
            except (TypeError, ValueError) as error:
                return TaskFailed(
                    cause=Cause(
                        kind=FailureKind.TASK_FAILURE.value,
                        message=f"Task {task_id} returned output that is not JSON: {error}",
                    ),
                    attempts=attempt,
                )
            return TaskSucceeded(payload=output, attempts=attempt)
