"""Execution-scoped scratch directories for file-based task invocation."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class TaskWorkdir:
    """Materialized per-task scratch paths."""

    workdir: Path
    input_path: Path
    output_path: Path
    stdout_path: Path
    stderr_path: Path


class ScratchWorkdirManager:
    """Creates ``<root>/<execution_id>/<task_id>/`` layouts.

    Concurrent executions never share a directory, so tasks of one execution
    cannot observe or clobber files of another.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir.absolute()

    def materialize(
        self,
        *,
        execution_id: str,
        task_id: str,
        payload: dict[str, Any],
    ) -> TaskWorkdir:
        base_dir = self.root_dir / _safe_segment(execution_id) / _safe_segment(task_id)
        base_dir.mkdir(parents=True, exist_ok=True)

        input_path = base_dir / "input.json"
        input_path.write_text(
            json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2),
            "utf-8",
        )
        return TaskWorkdir(
            workdir=base_dir,
            input_path=input_path,
            output_path=base_dir / "output.json",
            stdout_path=base_dir / "stdout.log",
            stderr_path=base_dir / "stderr.log",
        )


def _safe_segment(value: str) -> str:
    cleaned = "".join(char if char.isalnum() or char in "-_." else "_" for char in value)
    cleaned = cleaned.strip(".")
    if not cleaned:
        raise ValueError(f"Unusable scratch path segment: {value!r}")
    return cleaned
