"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from pkgflow.config import Settings
from pkgflow.orchestrator.flows import scratch_cleanup_flow
from pkgflow.orchestrator.invoker import Sleep, TaskCapability
from pkgflow.orchestrator.models import (
    ExecutionOutcome,
    ExecutionStatus,
    PackageCursor,
    WorkItem,
)
from pkgflow.orchestrator.services import PipelineRuntime, open_runtime

CLI_ROLE = "cli"


@dataclass(slots=True)
class RunCommand:
    """CLI input for starting one execution."""

    db_path: Path | None
    package: str
    version: str
    metadata_json: str | None = None
    name: str | None = None


@dataclass(slots=True)
class ListExecutionsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectExecutionCommand:
    db_path: Path | None
    execution_id: str


@dataclass(slots=True)
class DeadLetterListCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class RedriveCommand:
    """CLI input for draining the dead letter queue."""

    db_path: Path | None
    limit: int | None = None


@dataclass(slots=True)
class ReprocessAllCommand:
    db_path: Path | None
    page_size: int | None = None


@dataclass(slots=True)
class CatalogAddCommand:
    db_path: Path | None
    package: str
    version: str
    metadata_json: str | None = None


@dataclass(slots=True)
class CatalogListCommand:
    db_path: Path | None
    limit: int
    after_package: str | None = None
    after_version: str | None = None


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for one scratch cleanup pass."""

    scratch_root: Path | None = None
    min_age_seconds: float | None = None


class PipelineCliController:
    """Command handlers returning printable output lines.

    ``tasks`` and ``sleep`` override the configured task registry and retry
    sleep, which lets tests run executions in-process.
    """

    def __init__(
        self,
        *,
        tasks: Mapping[str, TaskCapability] | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._tasks = tasks
        self._sleep = sleep or asyncio.sleep

    def run(self, command: RunCommand) -> list[str]:
        work_item = WorkItem.from_payload(
            {
                "package": command.package,
                "version": command.version,
                "metadata": _parse_metadata(command.metadata_json),
            },
        )
        settings = self._settings_for_run(command.db_path)
        with open_runtime(settings, tasks=self._tasks, sleep=self._sleep) as runtime:
            outcome = asyncio.run(_run_one(runtime, work_item, name=command.name))

        lines = [
            f"Execution: {outcome.execution_id}",
            f"Package: {work_item.coordinate}",
            f"Status: {outcome.status.value}",
        ]
        for branch in outcome.document.get("branches", []):
            if "error" in branch:
                lines.append(
                    f"  {branch['variant']}: error {branch['error']['kind']}: "
                    f"{branch['error']['message']}",
                )
            else:
                lines.append(f"  {branch['variant']}: ok")
        catalog_update = outcome.document.get("catalogUpdate")
        if catalog_update is not None:
            lines.append(
                f"Catalog: etag={catalog_update.get('etag')} "
                f"versionId={catalog_update.get('versionId')}",
            )
        if outcome.cause is not None:
            lines.append(f"Cause: {outcome.cause.kind}: {outcome.cause.message}")
        return lines

    def list_executions(self, command: ListExecutionsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with open_runtime(settings, tasks={}) as runtime:
            executions = runtime.executions.list_executions(
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Executions: {len(executions)}"]
        for execution in executions:
            lines.append(
                f"  {execution.execution_id} {execution.package}@{execution.version} "
                f"role={execution.role} status={execution.status.value} "
                f"stage={execution.current_stage.value} "
                f"started_at={execution.started_at.isoformat()}",
            )
        return lines

    def inspect(self, command: InspectExecutionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings, tasks={}) as runtime:
            execution = runtime.executions.get_execution(execution_id=command.execution_id)
            events = runtime.executions.list_events(execution_id=command.execution_id)
        if execution is None:
            return [f"Execution not found: {command.execution_id}"]

        cause = f"{execution.cause.kind}: {execution.cause.message}" if execution.cause else "-"
        finished = execution.finished_at.isoformat() if execution.finished_at else "-"
        lines = [
            f"Execution: {execution.execution_id}",
            f"Name: {execution.name}",
            f"Role: {execution.role}",
            f"Package: {execution.package}@{execution.version}",
            f"Status: {execution.status.value}",
            f"Stage: {execution.current_stage.value}",
            f"Cause: {cause}",
            f"Started: {execution.started_at.isoformat()}",
            f"Finished: {finished}",
            f"Events: {len(events)}",
        ]
        for event in events:
            stage_from = event.stage_from.value if event.stage_from else "-"
            stage_to = event.stage_to.value if event.stage_to else "-"
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} {stage_from} -> {stage_to}",
            )
        return lines

    def list_dead_letters(self, command: DeadLetterListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings, tasks={}) as runtime:
            total = runtime.dead_letters.count()
            views = runtime.dead_letters.list_messages(limit=command.limit)

        lines = [f"Dead letters: {total}"]
        for view in views:
            message = view.message
            lines.append(
                f"  {view.message_id} execution={message.execution_id or '-'} "
                f"input={json.dumps(message.original_input, sort_keys=True)} "
                f"cause={message.cause.kind} captured_at={message.captured_at.isoformat()}",
            )
        return lines

    def redrive(self, command: RedriveCommand) -> list[str]:
        settings = self._settings_for_run(command.db_path)
        with open_runtime(settings, tasks=self._tasks, sleep=self._sleep) as runtime:
            summary, outcomes = asyncio.run(_redrive(runtime, limit=command.limit))
            remaining = runtime.dead_letters.count()

        return [
            f"Redrive attempted: {summary.attempted}",
            f"Redrive succeeded: {summary.succeeded}",
            f"Redrive failed: {summary.failed}",
            *_outcome_lines(outcomes),
            f"Dead letters remaining: {remaining}",
        ]

    def reprocess_all(self, command: ReprocessAllCommand) -> list[str]:
        settings = self._settings_for_run(command.db_path)
        if command.page_size is not None:
            settings = replace(settings, reprocess_page_size=command.page_size)
            settings.validate()
        with open_runtime(settings, tasks=self._tasks, sleep=self._sleep) as runtime:
            summary, outcomes = asyncio.run(_reprocess_all(runtime))

        resumed = (
            f"{summary.resumed_from.package}@{summary.resumed_from.version}"
            if summary.resumed_from is not None
            else "-"
        )
        return [
            f"Reprocess started: {summary.count}",
            f"Pages: {summary.pages}",
            f"Resumed after: {resumed}",
            f"Previously started: {summary.previously_started}",
            f"Completed: {'yes' if summary.completed else 'no'}",
            *_outcome_lines(outcomes),
        ]

    def catalog_add(self, command: CatalogAddCommand) -> list[str]:
        work_item = WorkItem.from_payload(
            {
                "package": command.package,
                "version": command.version,
                "metadata": _parse_metadata(command.metadata_json),
            },
        )
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings, tasks={}) as runtime:
            entry = runtime.catalog.record_ingested(
                package=work_item.package,
                version=work_item.version,
                metadata=work_item.metadata,
            )
            total = runtime.catalog.count()
        return [
            f"Catalogued: {entry.package}@{entry.version}",
            f"Catalog size: {total}",
        ]

    def catalog_list(self, command: CatalogListCommand) -> list[str]:
        if (command.after_package is None) != (command.after_version is None):
            raise ValueError("--after-package and --after-version must be given together.")
        after = (
            PackageCursor(package=command.after_package, version=command.after_version)
            if command.after_package is not None and command.after_version is not None
            else None
        )
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings, tasks={}) as runtime:
            page = runtime.catalog.list_page(after=after, limit=command.limit)

        lines = [f"Packages: {len(page.entries)}"]
        for entry in page.entries:
            lines.append(
                f"  {entry.package}@{entry.version} ingested_at={entry.ingested_at.isoformat()}",
            )
        if page.next_cursor is not None:
            lines.append(
                f"Next: --after-package {page.next_cursor.package} "
                f"--after-version {page.next_cursor.version}",
            )
        return lines

    def cleanup(self, command: CleanupCommand) -> list[str]:
        scratch_root = command.scratch_root or Settings.from_env().cleanup.scratch_root
        # Runs the flow body in-process; served runs go through serve_scratch_cleanup.
        summary = scratch_cleanup_flow.fn(
            scratch_root=str(scratch_root),
            min_age_seconds=command.min_age_seconds,
        )
        lines = [
            f"Scratch root: {scratch_root}",
            f"Removed: {summary.removed}",
            f"Protected: {summary.protected}",
            f"Too recent: {summary.recent}",
            f"Errors: {summary.errors}",
        ]
        lines.extend(f"  removed {path}" for path in summary.removed_paths)
        return lines

    def _settings_for_run(self, db_path: Path | None) -> Settings:
        settings = Settings.from_env(db_path=db_path)
        if self._tasks is None:
            settings.validate_for_run()
        else:
            settings.validate()
        return settings


async def _run_one(
    runtime: PipelineRuntime,
    work_item: WorkItem,
    *,
    name: str | None,
) -> ExecutionOutcome:
    handle = await runtime.engine.start(work_item, role=CLI_ROLE, name=name)
    return await handle.wait()


async def _redrive(runtime: PipelineRuntime, *, limit: int | None):
    summary = await runtime.redrive.redrive(limit=limit)
    return summary, await runtime.engine.drain()


async def _reprocess_all(runtime: PipelineRuntime):
    summary = await runtime.reprocess.reprocess_all()
    return summary, await runtime.engine.drain()


def _outcome_lines(outcomes: list[ExecutionOutcome | BaseException]) -> list[str]:
    counts: dict[str, int] = {}
    for outcome in outcomes:
        key = outcome.status.value if isinstance(outcome, ExecutionOutcome) else "error"
        counts[key] = counts.get(key, 0) + 1
    return [f"Executions {key}: {counts[key]}" for key in sorted(counts)]


def _parse_metadata(raw: str | None) -> dict[str, object]:
    if raw is None or not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid --metadata JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError("--metadata must be a JSON object.")
    return payload


def _parse_status(raw: str | None) -> ExecutionStatus | None:
    if raw is None:
        return None
    try:
        return ExecutionStatus(raw)
    except ValueError as error:
        supported = ", ".join(status.value for status in ExecutionStatus)
        raise ValueError(f"Unsupported status {raw!r}. Expected one of: {supported}.") from error
