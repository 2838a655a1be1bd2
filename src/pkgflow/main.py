"""CLI entrypoint for pkgflow."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from pkgflow import __version__
from pkgflow.config import Settings
from pkgflow.orchestrator.controllers import (
    CatalogAddCommand,
    CatalogListCommand,
    CleanupCommand,
    DeadLetterListCommand,
    InspectExecutionCommand,
    ListExecutionsCommand,
    PipelineCliController,
    RedriveCommand,
    ReprocessAllCommand,
    RunCommand,
)
from pkgflow.orchestrator.errors import PipelineError
from pkgflow.orchestrator.flows import serve_scratch_cleanup

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="pkgflow")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def pkgflow(log_level: str) -> None:
    """Package version processing pipeline."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@pkgflow.command("run")
@_DB_PATH_OPTION
@click.option("--package", required=True, help="Package name.")
@click.option("--version", "package_version", required=True, help="Package version.")
@click.option("--metadata", "metadata_json", default=None, help="Work item metadata as JSON.")
@click.option("--name", default=None, help="Optional execution name.")
def run_command(
    db_path: Path | None,
    package: str,
    package_version: str,
    metadata_json: str | None,
    name: str | None,
) -> None:
    """Start one execution and wait for its outcome."""

    with _cli_errors():
        _emit_lines(
            PIPELINE_CONTROLLER.run(
                RunCommand(
                    db_path=db_path,
                    package=package,
                    version=package_version,
                    metadata_json=metadata_json,
                    name=name,
                ),
            ),
        )


@pkgflow.command("executions")
@_DB_PATH_OPTION
@click.option("--status", default=None, help="Filter by status, for example failed.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1_000),
    default=20,
    show_default=True,
)
def list_executions(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent executions."""

    with _cli_errors():
        _emit_lines(
            PIPELINE_CONTROLLER.list_executions(
                ListExecutionsCommand(db_path=db_path, status=status, limit=limit),
            ),
        )


@pkgflow.command("inspect")
@_DB_PATH_OPTION
@click.argument("execution_id")
def inspect_execution(db_path: Path | None, execution_id: str) -> None:
    """Show one execution with its stage transitions."""

    with _cli_errors():
        _emit_lines(
            PIPELINE_CONTROLLER.inspect(
                InspectExecutionCommand(db_path=db_path, execution_id=execution_id),
            ),
        )


@pkgflow.group()
def dlq() -> None:
    """Dead letter queue commands."""


@dlq.command("list")
@_DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1_000),
    default=50,
    show_default=True,
)
def dlq_list(db_path: Path | None, limit: int) -> None:
    """List dead letters, oldest first."""

    with _cli_errors():
        _emit_lines(
            PIPELINE_CONTROLLER.list_dead_letters(
                DeadLetterListCommand(db_path=db_path, limit=limit),
            ),
        )


@pkgflow.command("redrive")
@_DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many dead letters.",
)
def redrive(db_path: Path | None, limit: int | None) -> None:
    """Restart every dead-lettered execution from its original input."""

    with _cli_errors():
        _emit_lines(PIPELINE_CONTROLLER.redrive(RedriveCommand(db_path=db_path, limit=limit)))


@pkgflow.command("reprocess-all")
@_DB_PATH_OPTION
@click.option(
    "--page-size",
    type=click.IntRange(min=1),
    default=None,
    help="Catalog page size; defaults to PKGFLOW_REPROCESS_PAGE_SIZE.",
)
def reprocess_all(db_path: Path | None, page_size: int | None) -> None:
    """Start one execution per catalogued package version."""

    with _cli_errors():
        _emit_lines(
            PIPELINE_CONTROLLER.reprocess_all(
                ReprocessAllCommand(db_path=db_path, page_size=page_size),
            ),
        )


@pkgflow.group()
def catalog() -> None:
    """Package catalog commands."""


@catalog.command("add")
@_DB_PATH_OPTION
@click.option("--package", required=True, help="Package name.")
@click.option("--version", "package_version", required=True, help="Package version.")
@click.option("--metadata", "metadata_json", default=None, help="Metadata as JSON.")
def catalog_add(
    db_path: Path | None,
    package: str,
    package_version: str,
    metadata_json: str | None,
) -> None:
    """Record an ingested package version."""

    with _cli_errors():
        _emit_lines(
            PIPELINE_CONTROLLER.catalog_add(
                CatalogAddCommand(
                    db_path=db_path,
                    package=package,
                    version=package_version,
                    metadata_json=metadata_json,
                ),
            ),
        )


@catalog.command("list")
@_DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1_000),
    default=100,
    show_default=True,
)
@click.option("--after-package", default=None, help="Resume listing after this package.")
@click.option("--after-version", default=None, help="Resume listing after this version.")
def catalog_list(
    db_path: Path | None,
    limit: int,
    after_package: str | None,
    after_version: str | None,
) -> None:
    """List catalogued package versions in (package, version) order."""

    with _cli_errors():
        _emit_lines(
            PIPELINE_CONTROLLER.catalog_list(
                CatalogListCommand(
                    db_path=db_path,
                    limit=limit,
                    after_package=after_package,
                    after_version=after_version,
                ),
            ),
        )


@pkgflow.command("cleanup")
@click.option(
    "--scratch-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Scratch root; defaults to PKGFLOW_SCRATCH_ROOT.",
)
@click.option(
    "--min-age-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Keep entries modified within this window.",
)
@click.option(
    "--serve",
    is_flag=True,
    default=False,
    help="Serve the cleanup flow on PKGFLOW_CLEANUP_INTERVAL_SECONDS instead of running once.",
)
def cleanup(scratch_root: Path | None, min_age_seconds: float | None, serve: bool) -> None:
    """Delete unprotected entries from the shared scratch area."""

    with _cli_errors():
        if serve:
            settings = Settings.from_env()
            settings.validate()
            serve_scratch_cleanup(
                interval_seconds=settings.cleanup.interval_seconds,
                scratch_root=scratch_root,
                min_age_seconds=min_age_seconds,
            )
            return
        _emit_lines(
            PIPELINE_CONTROLLER.cleanup(
                CleanupCommand(scratch_root=scratch_root, min_age_seconds=min_age_seconds),
            ),
        )


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (ValueError, PipelineError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pkgflow()
