"""Runtime configuration for the package processing pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from pkgflow.orchestrator.models import (
    BRANCH_RETRY_POLICY,
    CATALOG_RETRY_POLICY,
    RetryPolicy,
)

DEFAULT_VARIANTS: tuple[str, ...] = ("python", "typescript")


@dataclass(slots=True)
class RetrySettings:
    """Tunable part of a retry policy; the retryable kinds stay fixed."""

    interval_seconds: float = 30.0
    backoff_rate: float = 2.0
    max_attempts: int = 3

    def to_policy(self, template: RetryPolicy) -> RetryPolicy:
        return RetryPolicy(
            retry_on=template.retry_on,
            interval_seconds=self.interval_seconds,
            backoff_rate=self.backoff_rate,
            max_attempts=self.max_attempts,
        )


@dataclass(slots=True)
class PipelineSettings:
    """Workflow engine settings."""

    variants: tuple[str, ...] = DEFAULT_VARIANTS
    execution_timeout_seconds: float = 3_600.0
    catalog_concurrency: int = 1
    branch_retry: RetrySettings = field(default_factory=RetrySettings)
    catalog_retry: RetrySettings = field(default_factory=lambda: RetrySettings(max_attempts=5))

    @property
    def branch_policy(self) -> RetryPolicy:
        return self.branch_retry.to_policy(BRANCH_RETRY_POLICY)

    @property
    def catalog_policy(self) -> RetryPolicy:
        return self.catalog_retry.to_policy(CATALOG_RETRY_POLICY)


@dataclass(slots=True)
class TaskSettings:
    """External task commands.

    Templates accept ``{input_file}``, ``{output_file}``, ``{workdir}``,
    ``{variant}`` and ``{task_id}`` placeholders.
    """

    command_template: str = ""
    catalog_command_template: str = ""
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class CleanupSettings:
    """Shared scratch area cleanup settings."""

    scratch_root: Path = Path(".pkgflow/scratch")
    protected_paths: tuple[Path, ...] = ()
    min_age_seconds: float = 0.0
    interval_seconds: int = 3_600

    def effective_protected_paths(self) -> tuple[Path, ...]:
        return self.protected_paths or (self.scratch_root / "HOME",)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".pkgflow.db")
    sqlite_busy_timeout_ms: int = 5_000
    reprocess_page_size: int = 100
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    tasks: TaskSettings = field(default_factory=TaskSettings)
    cleanup: CleanupSettings = field(default_factory=CleanupSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PKGFLOW_DB_PATH", ".pkgflow.db")),
            sqlite_busy_timeout_ms=int(os.getenv("PKGFLOW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            reprocess_page_size=int(os.getenv("PKGFLOW_REPROCESS_PAGE_SIZE", "100")),
            pipeline=PipelineSettings(
                variants=_csv_env("PKGFLOW_VARIANTS") or DEFAULT_VARIANTS,
                execution_timeout_seconds=float(
                    os.getenv("PKGFLOW_EXECUTION_TIMEOUT_SECONDS", "3600"),
                ),
                catalog_concurrency=int(os.getenv("PKGFLOW_CATALOG_CONCURRENCY", "1")),
                branch_retry=_retry_from_env("PKGFLOW_BRANCH_RETRY", default_max_attempts=3),
                catalog_retry=_retry_from_env("PKGFLOW_CATALOG_RETRY", default_max_attempts=5),
            ),
            tasks=TaskSettings(
                command_template=os.getenv("PKGFLOW_TASK_COMMAND_TEMPLATE", ""),
                catalog_command_template=os.getenv("PKGFLOW_CATALOG_COMMAND_TEMPLATE", ""),
                timeout_seconds=float(os.getenv("PKGFLOW_TASK_TIMEOUT_SECONDS", "900")),
            ),
            cleanup=CleanupSettings(
                scratch_root=Path(os.getenv("PKGFLOW_SCRATCH_ROOT", ".pkgflow/scratch")),
                protected_paths=tuple(Path(item) for item in _csv_env("PKGFLOW_PROTECTED_PATHS")),
                min_age_seconds=float(os.getenv("PKGFLOW_CLEANUP_MIN_AGE_SECONDS", "0")),
                interval_seconds=int(os.getenv("PKGFLOW_CLEANUP_INTERVAL_SECONDS", "3600")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values no command can work with."""

        if not self.pipeline.variants:
            raise ValueError("PKGFLOW_VARIANTS must name at least one variant.")
        if len(set(self.pipeline.variants)) != len(self.pipeline.variants):
            raise ValueError("PKGFLOW_VARIANTS must not contain duplicates.")
        if self.pipeline.execution_timeout_seconds <= 0:
            raise ValueError("PKGFLOW_EXECUTION_TIMEOUT_SECONDS must be > 0.")
        if self.pipeline.catalog_concurrency < 1:
            raise ValueError("PKGFLOW_CATALOG_CONCURRENCY must be >= 1.")
        _validate_retry("PKGFLOW_BRANCH_RETRY", self.pipeline.branch_retry)
        _validate_retry("PKGFLOW_CATALOG_RETRY", self.pipeline.catalog_retry)
        if self.reprocess_page_size <= 0:
            raise ValueError("PKGFLOW_REPROCESS_PAGE_SIZE must be > 0.")
        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("PKGFLOW_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.cleanup.min_age_seconds < 0:
            raise ValueError("PKGFLOW_CLEANUP_MIN_AGE_SECONDS must be >= 0.")
        if self.cleanup.interval_seconds <= 0:
            raise ValueError("PKGFLOW_CLEANUP_INTERVAL_SECONDS must be > 0.")

    def validate_for_run(self) -> None:
        """Raise configuration error if executions cannot invoke their tasks."""

        self.validate()
        if not self.tasks.command_template.strip():
            raise ValueError(
                "A task command is required. Set PKGFLOW_TASK_COMMAND_TEMPLATE.",
            )
        if not self.tasks.catalog_command_template.strip():
            raise ValueError(
                "A catalog update command is required. Set PKGFLOW_CATALOG_COMMAND_TEMPLATE.",
            )
        if self.tasks.timeout_seconds <= 0:
            raise ValueError("PKGFLOW_TASK_TIMEOUT_SECONDS must be > 0.")


def _retry_from_env(prefix: str, *, default_max_attempts: int) -> RetrySettings:
    return RetrySettings(
        interval_seconds=float(os.getenv(f"{prefix}_INTERVAL_SECONDS", "30")),
        backoff_rate=float(os.getenv(f"{prefix}_BACKOFF_RATE", "2.0")),
        max_attempts=int(os.getenv(f"{prefix}_MAX_ATTEMPTS", str(default_max_attempts))),
    )


def _validate_retry(prefix: str, retry: RetrySettings) -> None:
    if retry.max_attempts < 1:
        raise ValueError(f"{prefix}_MAX_ATTEMPTS must be >= 1.")
    if retry.interval_seconds < 0:
        raise ValueError(f"{prefix}_INTERVAL_SECONDS must be >= 0.")
    if retry.backoff_rate < 1:
        raise ValueError(f"{prefix}_BACKOFF_RATE must be >= 1.")


def _csv_env(name: str) -> tuple[str, ...]:
    deduped: list[str] = []
    for part in os.getenv(name, "").split(","):
        normalized = part.strip()
        if normalized and normalized not in deduped:
            deduped.append(normalized)
    return tuple(deduped)
