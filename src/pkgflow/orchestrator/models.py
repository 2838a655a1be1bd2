"""Domain models for pipeline executions, branch results and dead letters."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

EXECUTION_FIELD = "$execution"


class ExecutionStatus(str, Enum):
    """Durable execution lifecycle states."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INFRASTRUCTURE_ERROR = "infrastructure_error"


class PipelineState(str, Enum):
    """States of the per-execution pipeline state machine."""

    INIT = "init"
    FAN_OUT = "fan_out"
    AGGREGATE = "aggregate"
    CATALOG_UPDATE = "catalog_update"
    DLQ_CHECK = "dlq_check"
    SUCCESS = "success"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Well-known cause kinds; task bodies may report others verbatim."""

    TRANSIENT = "Transient"
    TOO_MANY_REQUESTS = "TooManyRequests"
    TASK_TIMEOUT = "TaskTimeout"
    TASK_FAILURE = "TaskFailure"
    TIMEOUT = "Timeout"
    BRANCH_FAILURE = "BranchFailure"
    INFRASTRUCTURE = "Infrastructure"


@dataclass(frozen=True, slots=True)
class Cause:
    """Structured ``{kind, message}`` failure description."""

    kind: str
    message: str

    def to_payload(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Cause:
        return cls(kind=str(payload.get("kind", "")), message=str(payload.get("message", "")))


@dataclass(frozen=True, slots=True)
class WorkItem:
    """Triggering payload: one package version to process."""

    package: str
    version: str
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def coordinate(self) -> str:
        return f"{self.package}@{self.version}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "package": self.package,
            "version": self.version,
            "metadata": copy.deepcopy(dict(self.metadata)),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> WorkItem:
        """Validate the trigger schema shared by start, redrive and reprocess-all."""

        package = payload.get("package")
        version = payload.get("version")
        if not isinstance(package, str) or not package.strip():
            raise ValueError("Work item requires a non-empty 'package' string.")
        if not isinstance(version, str) or not version.strip():
            raise ValueError("Work item requires a non-empty 'version' string.")
        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise ValueError("Work item 'metadata' must be a JSON object.")
        return cls(package=package.strip(), version=version.strip(), metadata=dict(metadata))


@dataclass(slots=True)
class ExecutionContext:
    """Ambient execution metadata attached to the document at Init."""

    execution_id: str
    name: str
    role: str
    start_time: datetime
    timeout_seconds: int
    current_stage: PipelineState = PipelineState.INIT

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.execution_id,
            "name": self.name,
            "role": self.role,
            "startTime": self.start_time.isoformat(),
            "timeoutSeconds": self.timeout_seconds,
            "currentStage": self.current_stage.value,
        }


@dataclass(frozen=True, slots=True)
class BranchResult:
    """Outcome of one fan-out variant: exactly one of ``success`` or ``error``."""

    variant: str
    success: dict[str, Any] | None = None
    error: Cause | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def succeeded(cls, variant: str, payload: dict[str, Any]) -> BranchResult:
        return cls(variant=variant, success=payload)

    @classmethod
    def failed(cls, variant: str, cause: Cause) -> BranchResult:
        return cls(variant=variant, error=cause)

    def to_payload(self) -> dict[str, Any]:
        if self.error is not None:
            return {"variant": self.variant, "error": self.error.to_payload()}
        return {"variant": self.variant, "success": self.success}


@dataclass(frozen=True, slots=True)
class CatalogUpdateResult:
    """Opaque version token returned by a successful catalog update."""

    etag: str | None
    version_id: str | None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> CatalogUpdateResult:
        etag = payload.get("etag", payload.get("ETag"))
        version_id = payload.get("versionId", payload.get("version_id"))
        return cls(
            etag=str(etag) if etag is not None else None,
            version_id=str(version_id) if version_id is not None else None,
        )

    def to_payload(self) -> dict[str, Any]:
        return {"etag": self.etag, "versionId": self.version_id}


@dataclass(slots=True)
class ExecutionDocument:
    """Mutable state document threaded through the pipeline stages."""

    work_item: WorkItem
    original_input: dict[str, Any]
    context: ExecutionContext
    branch_results: list[BranchResult] = field(default_factory=list)
    catalog_update: CatalogUpdateResult | None = None
    error: Cause | None = None

    def task_input(self) -> dict[str, Any]:
        """Payload handed to task bodies: work item plus the execution context."""

        payload = self.work_item.to_payload()
        payload[EXECUTION_FIELD] = self.context.to_payload()
        return payload

    def to_payload(self) -> dict[str, Any]:
        payload = self.task_input()
        payload["branches"] = [result.to_payload() for result in self.branch_results]
        if self.catalog_update is not None:
            payload["catalogUpdate"] = self.catalog_update.to_payload()
        if self.error is not None:
            payload["error"] = self.error.to_payload()
        return payload


@dataclass(frozen=True, slots=True)
class DeadLetterMessage:
    """Failed execution captured for operator redrive."""

    original_input: dict[str, Any]
    cause: Cause
    captured_at: datetime
    document: dict[str, Any]
    execution_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "originalInput": self.original_input,
            "cause": self.cause.to_payload(),
            "capturedAt": self.captured_at.isoformat(),
            "document": self.document,
        }


@dataclass(frozen=True, slots=True)
class DeadLetterView:
    """Stored dead letter with its queue identity."""

    message_id: str
    message: DeadLetterMessage


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry rule applied by the task invoker.

    ``max_attempts`` counts the first attempt. The delay before retry ``n``
    (1-based) is ``interval_seconds * backoff_rate ** (n - 1)``.
    """

    retry_on: frozenset[str]
    interval_seconds: float = 30.0
    backoff_rate: float = 2.0
    max_attempts: int = 3

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("Retry policy max_attempts must be >= 1.")
        if self.interval_seconds < 0:
            raise ValueError("Retry policy interval_seconds must be >= 0.")
        if self.backoff_rate < 1:
            raise ValueError("Retry policy backoff_rate must be >= 1.")

    def retries(self, kind: str) -> bool:
        return kind in self.retry_on

    def delay_for(self, retry_number: int) -> float:
        return self.interval_seconds * (self.backoff_rate ** max(retry_number - 1, 0))


BRANCH_RETRY_POLICY = RetryPolicy(
    retry_on=frozenset(
        {
            FailureKind.TRANSIENT.value,
            FailureKind.TOO_MANY_REQUESTS.value,
            FailureKind.TASK_TIMEOUT.value,
        },
    ),
    interval_seconds=30.0,
    max_attempts=3,
)

# The catalog-update task runs with a downstream concurrency of one, so only
# throttling is retried and more aggressively.
CATALOG_RETRY_POLICY = RetryPolicy(
    retry_on=frozenset({FailureKind.TOO_MANY_REQUESTS.value}),
    interval_seconds=30.0,
    max_attempts=5,
)


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Terminal result of one execution."""

    execution_id: str
    status: ExecutionStatus
    cause: Cause | None
    document: dict[str, Any]


@dataclass(slots=True)
class ExecutionView:
    """Readable execution record for CLI and controllers."""

    execution_id: str
    name: str
    role: str
    package: str
    version: str
    status: ExecutionStatus
    current_stage: PipelineState
    timeout_seconds: int
    original_input: dict[str, Any]
    document: dict[str, Any] | None
    cause: Cause | None
    started_at: datetime
    finished_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class ExecutionEventView:
    """Execution event entry for the audit trail."""

    event_id: int
    execution_id: str
    event_type: str
    stage_from: PipelineState | None
    stage_to: PipelineState | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PackageEntry:
    """One previously ingested package version in the durable catalog."""

    package: str
    version: str
    metadata: dict[str, Any]
    ingested_at: datetime

    def to_work_item(self) -> WorkItem:
        return WorkItem(package=self.package, version=self.version, metadata=self.metadata)


@dataclass(frozen=True, slots=True)
class PackageCursor:
    """Keyset position in the package catalog ordering."""

    package: str
    version: str


@dataclass(slots=True)
class PackagePage:
    """One page of catalog entries and the cursor after its last entry."""

    entries: list[PackageEntry]
    next_cursor: PackageCursor | None


@dataclass(slots=True)
class RedriveSummary:
    """Counters reported by one redrive drain."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    execution_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReprocessSummary:
    """Counters reported by one reprocess-all run."""

    count: int = 0
    previously_started: int = 0
    pages: int = 0
    completed: bool = False
    resumed_from: PackageCursor | None = None
    execution_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CleanupSummary:
    """Counters reported by one scratch cleanup pass."""

    removed: int = 0
    protected: int = 0
    recent: int = 0
    errors: int = 0
    removed_paths: list[str] = field(default_factory=list)
