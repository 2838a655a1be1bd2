"""Subprocess-backed task capabilities configured by command templates."""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pkgflow.orchestrator.engine import CATALOG_UPDATE_TASK_ID, branch_task_id
from pkgflow.orchestrator.errors import TaskError
from pkgflow.orchestrator.failure_classifier import classify_failure_text
from pkgflow.orchestrator.models import EXECUTION_FIELD, FailureKind
from pkgflow.orchestrator.workdir import ScratchWorkdirManager

logger = logging.getLogger(__name__)

# Killed by SIGKILL/SIGTERM, either reported by a shell or directly as a negative code.
TRANSIENT_EXIT_CODES = frozenset({137, 143, -9, -15})
_PLACEHOLDERS = ("input_file", "output_file", "workdir", "variant", "task_id")


class CommandTask:
    """Runs one external command per invocation.

    The payload is written to ``input.json`` in an execution-scoped scratch
    directory and the command is expected to write its JSON result object to
    ``output.json``. Non-zero exits are classified from stderr.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        command_template: str,
        workdirs: ScratchWorkdirManager,
        timeout_seconds: float,
        variant: str = "",
    ) -> None:
        self.task_id = task_id
        self.command_template = command_template
        self.workdirs = workdirs
        self.timeout_seconds = timeout_seconds
        self.variant = variant

    async def invoke(self, payload: dict[str, Any]) -> dict[str, Any]:
        execution = payload.get(EXECUTION_FIELD)
        execution_id = str(execution.get("id")) if isinstance(execution, dict) else "adhoc"
        workdir = self.workdirs.materialize(
            execution_id=execution_id,
            task_id=self.task_id,
            payload=payload,
        )
        argv = build_command_args(
            self.command_template,
            values={
                "input_file": str(workdir.input_path),
                "output_file": str(workdir.output_path),
                "workdir": str(workdir.workdir),
                "variant": self.variant,
                "task_id": self.task_id,
            },
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir.workdir,
            )
        except FileNotFoundError as error:
            raise TaskError(f"Task command not found: {argv[0]}") from error
        except OSError as error:
            raise TaskError(
                f"Task command failed to start: {error}",
                kind=FailureKind.TRANSIENT.value,
            ) from error

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            await _terminate_process(process)
            raise TaskError(
                f"Task {self.task_id} timed out after {self.timeout_seconds:g}s.",
                kind=FailureKind.TASK_TIMEOUT.value,
            ) from None
        except asyncio.CancelledError:
            await _terminate_process(process)
            raise

        workdir.stdout_path.write_bytes(stdout)
        workdir.stderr_path.write_bytes(stderr)
        returncode = process.returncode
        if returncode in TRANSIENT_EXIT_CODES:
            raise TaskError(
                f"Task {self.task_id} was killed (exit code {returncode}).",
                kind=FailureKind.TRANSIENT.value,
            )
        if returncode != 0:
            text = stderr.decode("utf-8", errors="replace").strip()
            classification = classify_failure_text(text or f"exit code {returncode}")
            logger.debug(
                "Task %s exited with %s: %s",
                self.task_id,
                returncode,
                classification.to_event_details(),
            )
            raise TaskError(classification.cause.message, kind=classification.cause.kind)
        return _read_output(self.task_id, workdir.output_path)


def build_command_args(command_template: str, *, values: dict[str, str]) -> list[str]:
    """Render a command template into argv with every placeholder shell-quoted."""

    stripped = command_template.strip()
    if not stripped:
        raise TaskError("Task command template is empty.")
    try:
        quoted = {key: shlex.quote(values.get(key, "")) for key in _PLACEHOLDERS}
        rendered = stripped.format(**quoted)
    except (KeyError, IndexError) as error:
        raise TaskError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise TaskError("Task command template rendered empty command.")
    return argv


def build_task_registry(  # noqa: PLR0913
    *,
    variants: Sequence[str],
    task_command_template: str,
    catalog_command_template: str,
    scratch_root: Path,
    timeout_seconds: float,
) -> dict[str, CommandTask]:
    """Register one ``docgen-<variant>`` task per variant plus ``catalog-update``."""

    workdirs = ScratchWorkdirManager(scratch_root)
    registry: dict[str, CommandTask] = {
        branch_task_id(variant): CommandTask(
            task_id=branch_task_id(variant),
            command_template=task_command_template,
            workdirs=workdirs,
            timeout_seconds=timeout_seconds,
            variant=variant,
        )
        for variant in variants
    }
    registry[CATALOG_UPDATE_TASK_ID] = CommandTask(
        task_id=CATALOG_UPDATE_TASK_ID,
        command_template=catalog_command_template,
        workdirs=workdirs,
        timeout_seconds=timeout_seconds,
    )
    return registry


def _read_output(task_id: str, output_path: Path) -> dict[str, Any]:
    if not output_path.exists():
        raise TaskError(f"Task {task_id} did not write {output_path.name}.")
    try:
        payload = json.loads(output_path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise TaskError(f"Task {task_id} wrote invalid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise TaskError(f"Task {task_id} output must be a JSON object.")
    return payload


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()
