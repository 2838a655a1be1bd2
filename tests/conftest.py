"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from support import ECHO_CATALOG_COMMAND_TEMPLATE, ECHO_TASK_COMMAND_TEMPLATE

from pkgflow.storage.database import PipelineDatabase


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[PipelineDatabase]:
    db = PipelineDatabase(tmp_path / "pipeline.db")
    db.init_schema()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def echo_task_env(tmp_path: Path, monkeypatch) -> Path:
    """Point the task command templates at the local echo task."""

    for name in (
        "PKGFLOW_DB_PATH",
        "PKGFLOW_VARIANTS",
        "PKGFLOW_PROTECTED_PATHS",
        "PKGFLOW_CLEANUP_MIN_AGE_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    scratch_root = tmp_path / "scratch"
    monkeypatch.setenv("PKGFLOW_TASK_COMMAND_TEMPLATE", ECHO_TASK_COMMAND_TEMPLATE)
    monkeypatch.setenv("PKGFLOW_CATALOG_COMMAND_TEMPLATE", ECHO_CATALOG_COMMAND_TEMPLATE)
    monkeypatch.setenv("PKGFLOW_SCRATCH_ROOT", str(scratch_root))
    monkeypatch.setenv("PKGFLOW_BRANCH_RETRY_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("PKGFLOW_CATALOG_RETRY_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("PKGFLOW_TASK_TIMEOUT_SECONDS", "60")
    return scratch_root
