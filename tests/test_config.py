from __future__ import annotations

from pathlib import Path

import allure
import pytest

from pkgflow.config import Settings
from pkgflow.orchestrator.models import FailureKind

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]

_ENV_NAMES = (
    "PKGFLOW_DB_PATH",
    "PKGFLOW_VARIANTS",
    "PKGFLOW_EXECUTION_TIMEOUT_SECONDS",
    "PKGFLOW_BRANCH_RETRY_INTERVAL_SECONDS",
    "PKGFLOW_BRANCH_RETRY_BACKOFF_RATE",
    "PKGFLOW_BRANCH_RETRY_MAX_ATTEMPTS",
    "PKGFLOW_CATALOG_RETRY_INTERVAL_SECONDS",
    "PKGFLOW_CATALOG_RETRY_BACKOFF_RATE",
    "PKGFLOW_CATALOG_RETRY_MAX_ATTEMPTS",
    "PKGFLOW_CATALOG_CONCURRENCY",
    "PKGFLOW_SCRATCH_ROOT",
    "PKGFLOW_PROTECTED_PATHS",
    "PKGFLOW_CLEANUP_MIN_AGE_SECONDS",
    "PKGFLOW_CLEANUP_INTERVAL_SECONDS",
    "PKGFLOW_REPROCESS_PAGE_SIZE",
    "PKGFLOW_TASK_COMMAND_TEMPLATE",
    "PKGFLOW_CATALOG_COMMAND_TEMPLATE",
    "PKGFLOW_TASK_TIMEOUT_SECONDS",
    "PKGFLOW_SQLITE_BUSY_TIMEOUT_MS",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env) -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".pkgflow.db")
    assert settings.pipeline.variants == ("python", "typescript")
    assert settings.pipeline.execution_timeout_seconds == 3600
    assert settings.pipeline.catalog_concurrency == 1
    assert settings.reprocess_page_size == 100
    assert settings.cleanup.interval_seconds == 3600
    assert settings.cleanup.min_age_seconds == 0
    assert settings.cleanup.effective_protected_paths() == (Path(".pkgflow/scratch/HOME"),)

    branch = settings.pipeline.branch_policy
    assert branch.max_attempts == 3
    assert branch.interval_seconds == 30
    assert branch.retries(FailureKind.TASK_TIMEOUT.value)
    catalog = settings.pipeline.catalog_policy
    assert catalog.max_attempts == 5
    assert catalog.retry_on == frozenset({FailureKind.TOO_MANY_REQUESTS.value})
    settings.validate()


def test_environment_overrides(clean_env, tmp_path: Path) -> None:
    clean_env.setenv("PKGFLOW_DB_PATH", str(tmp_path / "custom.db"))
    clean_env.setenv("PKGFLOW_VARIANTS", "python, typescript ,java,python")
    clean_env.setenv("PKGFLOW_CATALOG_RETRY_MAX_ATTEMPTS", "7")
    clean_env.setenv("PKGFLOW_BRANCH_RETRY_INTERVAL_SECONDS", "1.5")
    clean_env.setenv("PKGFLOW_PROTECTED_PATHS", "/mnt/efs/HOME,/mnt/efs/keep")
    clean_env.setenv("PKGFLOW_CLEANUP_MIN_AGE_SECONDS", "900")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.pipeline.variants == ("python", "typescript", "java")
    assert settings.pipeline.catalog_policy.max_attempts == 7
    assert settings.pipeline.branch_policy.delay_for(2) == 3.0
    assert settings.cleanup.effective_protected_paths() == (
        Path("/mnt/efs/HOME"),
        Path("/mnt/efs/keep"),
    )
    assert settings.cleanup.min_age_seconds == 900


def test_explicit_db_path_wins(clean_env, tmp_path: Path) -> None:
    clean_env.setenv("PKGFLOW_DB_PATH", "ignored.db")

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("PKGFLOW_EXECUTION_TIMEOUT_SECONDS", "0", "PKGFLOW_EXECUTION_TIMEOUT_SECONDS"),
        ("PKGFLOW_CATALOG_CONCURRENCY", "0", "PKGFLOW_CATALOG_CONCURRENCY"),
        ("PKGFLOW_BRANCH_RETRY_MAX_ATTEMPTS", "0", "PKGFLOW_BRANCH_RETRY_MAX_ATTEMPTS"),
        ("PKGFLOW_CATALOG_RETRY_BACKOFF_RATE", "0.5", "PKGFLOW_CATALOG_RETRY_BACKOFF_RATE"),
        ("PKGFLOW_REPROCESS_PAGE_SIZE", "0", "PKGFLOW_REPROCESS_PAGE_SIZE"),
        ("PKGFLOW_CLEANUP_MIN_AGE_SECONDS", "-1", "PKGFLOW_CLEANUP_MIN_AGE_SECONDS"),
    ],
)
def test_validation_names_the_variable(clean_env, name: str, value: str, message: str) -> None:
    clean_env.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()


def test_run_requires_task_commands(clean_env) -> None:
    with pytest.raises(ValueError, match="PKGFLOW_TASK_COMMAND_TEMPLATE"):
        Settings.from_env().validate_for_run()

    clean_env.setenv("PKGFLOW_TASK_COMMAND_TEMPLATE", "docgen {input_file} {output_file}")
    with pytest.raises(ValueError, match="PKGFLOW_CATALOG_COMMAND_TEMPLATE"):
        Settings.from_env().validate_for_run()

    clean_env.setenv("PKGFLOW_CATALOG_COMMAND_TEMPLATE", "catalog {input_file} {output_file}")
    Settings.from_env().validate_for_run()
