from __future__ import annotations

import asyncio
import json
import shlex
import sys
from pathlib import Path

import allure
import pytest
from support import ECHO_CATALOG_COMMAND_TEMPLATE, ECHO_TASK_COMMAND_TEMPLATE

from pkgflow.orchestrator.errors import TaskError
from pkgflow.orchestrator.models import EXECUTION_FIELD, FailureKind
from pkgflow.orchestrator.tasks import CommandTask, build_command_args, build_task_registry
from pkgflow.orchestrator.workdir import ScratchWorkdirManager

pytestmark = [
    allure.epic("Task Adapters"),
    allure.feature("Command Tasks and Scratch Workdirs"),
]


def _payload(execution_id: str = "exec-1") -> dict[str, object]:
    return {
        "package": "left-pad",
        "version": "1.3.0",
        "metadata": {},
        EXECUTION_FIELD: {"id": execution_id, "role": "api"},
    }


def _task(tmp_path: Path, template: str, *, variant: str = "python", timeout: float = 30.0):
    return CommandTask(
        task_id=f"docgen-{variant}",
        command_template=template,
        workdirs=ScratchWorkdirManager(tmp_path / "scratch"),
        timeout_seconds=timeout,
        variant=variant,
    )


def test_command_task_returns_output_document(tmp_path: Path) -> None:
    task = _task(tmp_path, ECHO_TASK_COMMAND_TEMPLATE)

    result = asyncio.run(task.invoke(_payload()))

    assert result["package"] == "left-pad"
    assert result["variant"] == "python"
    assert len(result["etag"]) == 32
    workdir = tmp_path / "scratch" / "exec-1" / "docgen-python"
    assert json.loads((workdir / "input.json").read_text("utf-8"))["version"] == "1.3.0"
    assert (workdir / "output.json").exists()


def test_command_task_classifies_structured_stderr(tmp_path: Path) -> None:
    template = f"{ECHO_TASK_COMMAND_TEMPLATE} --fail-variant python --fail-kind TooManyRequests"
    task = _task(tmp_path, template)

    with pytest.raises(TaskError) as error:
        asyncio.run(task.invoke(_payload()))

    assert error.value.kind == FailureKind.TOO_MANY_REQUESTS.value
    assert error.value.message == "echo task failure requested"


def test_command_task_timeout_is_task_timeout(tmp_path: Path) -> None:
    template = f"{shlex.quote(sys.executable)} -c 'import time; time.sleep(30)'"
    task = _task(tmp_path, template, timeout=0.5)

    with pytest.raises(TaskError) as error:
        asyncio.run(task.invoke(_payload()))

    assert error.value.kind == FailureKind.TASK_TIMEOUT.value


def test_missing_output_file_is_a_task_failure(tmp_path: Path) -> None:
    template = f"{shlex.quote(sys.executable)} -c 'pass'"
    task = _task(tmp_path, template)

    with pytest.raises(TaskError, match="did not write output.json"):
        asyncio.run(task.invoke(_payload()))


def test_missing_executable_is_a_task_failure(tmp_path: Path) -> None:
    task = _task(tmp_path, "definitely-not-a-real-binary-3141 {input_file}")

    with pytest.raises(TaskError) as error:
        asyncio.run(task.invoke(_payload()))

    assert error.value.kind == FailureKind.TASK_FAILURE.value


def test_build_command_args_quotes_placeholders() -> None:
    argv = build_command_args(
        "gen --in {input_file} --variant {variant}",
        values={"input_file": "/tmp/with space/input.json", "variant": "python"},
    )

    assert argv == ["gen", "--in", "/tmp/with space/input.json", "--variant", "python"]
    with pytest.raises(TaskError, match="placeholder"):
        build_command_args("gen {unknown}", values={})
    with pytest.raises(TaskError, match="empty"):
        build_command_args("   ", values={})


def test_registry_has_one_task_per_variant_plus_catalog(tmp_path: Path) -> None:
    registry = build_task_registry(
        variants=("python", "typescript"),
        task_command_template=ECHO_TASK_COMMAND_TEMPLATE,
        catalog_command_template=ECHO_CATALOG_COMMAND_TEMPLATE,
        scratch_root=tmp_path,
        timeout_seconds=10,
    )

    assert sorted(registry) == ["catalog-update", "docgen-python", "docgen-typescript"]
    assert registry["docgen-typescript"].variant == "typescript"
    assert registry["catalog-update"].command_template == ECHO_CATALOG_COMMAND_TEMPLATE


def test_workdirs_are_scoped_per_execution(tmp_path: Path) -> None:
    manager = ScratchWorkdirManager(tmp_path)

    first = manager.materialize(execution_id="exec-1", task_id="docgen-python", payload={"a": 1})
    second = manager.materialize(execution_id="exec-2", task_id="docgen-python", payload={"a": 2})
    unsafe = manager.materialize(execution_id="../escape", task_id="x/y", payload={})

    assert first.workdir != second.workdir
    assert json.loads(first.input_path.read_text("utf-8")) == {"a": 1}
    assert unsafe.workdir.parent.parent == tmp_path
    with pytest.raises(ValueError, match="Unusable"):
        manager.materialize(execution_id="..", task_id="t", payload={})
