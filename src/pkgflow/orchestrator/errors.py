"""Exception hierarchy for the pipeline orchestration layer."""

from __future__ import annotations

from pkgflow.orchestrator.models import FailureKind


class PipelineError(RuntimeError):
    """Base error raised by the orchestration layer."""


class StartRejectedError(PipelineError):
    """Raised when an execution cannot be started for a work item."""


class InvalidTransitionError(PipelineError):
    """Raised when the state machine receives an event its state does not accept."""


class InfrastructureError(PipelineError):
    """The orchestration layer could not complete a required step."""


class DeadLetterWriteError(InfrastructureError):
    """A failed execution could not be durably recorded in the dead letter queue."""


class TaskError(Exception):
    """Failure raised by a task body with an explicit cause kind."""

    def __init__(self, message: str, *, kind: str = FailureKind.TASK_FAILURE.value) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
