"""Prefect flows for the administrative pipeline operations.

The cleanup flow is meant to be served on an interval (``pkgflow cleanup
--serve``); redrive and reprocess-all are on-demand flows that wait for the
executions they start.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from prefect import flow

from pkgflow.config import Settings
from pkgflow.orchestrator.cleanup import ScratchCleaner
from pkgflow.orchestrator.models import CleanupSummary, RedriveSummary, ReprocessSummary
from pkgflow.orchestrator.services import open_runtime

logger = logging.getLogger(__name__)

CLEANUP_DEPLOYMENT_NAME = "scratch-cleanup"


@flow(name="scratch_cleanup_flow")
def scratch_cleanup_flow(
    scratch_root: str | None = None,
    min_age_seconds: float | None = None,
) -> CleanupSummary:
    settings = Settings.from_env()
    if scratch_root:
        settings.cleanup.scratch_root = Path(scratch_root)
    if min_age_seconds is not None:
        settings.cleanup.min_age_seconds = min_age_seconds
    settings.validate()
    cleaner = ScratchCleaner(
        scratch_root=settings.cleanup.scratch_root,
        protected_paths=settings.cleanup.effective_protected_paths(),
        min_age_seconds=settings.cleanup.min_age_seconds,
    )
    return cleaner.cleanup()


@flow(name="redrive_flow")
def redrive_flow(db_path: str | None = None, limit: int | None = None) -> RedriveSummary:
    settings = Settings.from_env(db_path=Path(db_path) if db_path else None)
    settings.validate_for_run()
    with open_runtime(settings) as runtime:

        async def _drive() -> RedriveSummary:
            summary = await runtime.redrive.redrive(limit=limit)
            await runtime.engine.drain()
            return summary

        return asyncio.run(_drive())


@flow(name="reprocess_all_flow")
def reprocess_all_flow(db_path: str | None = None) -> ReprocessSummary:
    settings = Settings.from_env(db_path=Path(db_path) if db_path else None)
    settings.validate_for_run()
    with open_runtime(settings) as runtime:

        async def _drive() -> ReprocessSummary:
            summary = await runtime.reprocess.reprocess_all()
            await runtime.engine.drain()
            return summary

        return asyncio.run(_drive())


def serve_scratch_cleanup(
    *,
    interval_seconds: int,
    scratch_root: Path | None = None,
    min_age_seconds: float | None = None,
) -> None:
    """Block serving the cleanup flow on a fixed interval."""

    parameters: dict[str, object] = {}
    if scratch_root is not None:
        parameters["scratch_root"] = str(scratch_root)
    if min_age_seconds is not None:
        parameters["min_age_seconds"] = min_age_seconds
    logger.info(
        "Serving %s every %ds with parameters %s",
        CLEANUP_DEPLOYMENT_NAME,
        interval_seconds,
        parameters,
    )
    scratch_cleanup_flow.serve(
        name=CLEANUP_DEPLOYMENT_NAME,
        interval=interval_seconds,
        parameters=parameters,
    )
