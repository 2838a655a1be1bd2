"""Reprocess-all: restart the pipeline for every catalogued package version."""

from __future__ import annotations

import logging

from pkgflow.orchestrator.catalog import PackageCatalog
from pkgflow.orchestrator.engine import WorkflowEngine
from pkgflow.orchestrator.models import ReprocessSummary

logger = logging.getLogger(__name__)

REPROCESS_ROLE = "reprocess-all"
REPROCESS_CHECKPOINT_ID = "reprocess-all"


class ReprocessAllController:
    """Pages through the package catalog and starts one execution per entry.

    Progress is checkpointed after each fully started page, so an interrupted
    run resumes after the last completed page. Entries of a partially
    started page may be started twice; duplicates are not filtered.
    """

    def __init__(
        self,
        *,
        engine: WorkflowEngine,
        catalog: PackageCatalog,
        page_size: int = 100,
        checkpoint_id: str = REPROCESS_CHECKPOINT_ID,
    ) -> None:
        if page_size <= 0:
            raise ValueError("Reprocess page size must be > 0.")
        self.engine = engine
        self.catalog = catalog
        self.page_size = page_size
        self.checkpoint_id = checkpoint_id

    async def reprocess_all(self) -> ReprocessSummary:
        cursor, processed = self.catalog.open_checkpoint(self.checkpoint_id)
        summary = ReprocessSummary(previously_started=processed, resumed_from=cursor)
        if cursor is not None:
            logger.info(
                "Resuming reprocess-all after %s@%s (%d already started)",
                cursor.package,
                cursor.version,
                processed,
            )

        while True:
            page = self.catalog.list_page(after=cursor, limit=self.page_size)
            if not page.entries:
                break
            for entry in page.entries:
                handle = await self.engine.start(entry.to_work_item(), role=REPROCESS_ROLE)
                summary.execution_ids.append(handle.execution_id)
                summary.count += 1
            summary.pages += 1
            if page.next_cursor is None:
                break
            cursor = page.next_cursor
            self.catalog.save_checkpoint(
                self.checkpoint_id,
                cursor=cursor,
                processed_count=processed + summary.count,
            )

        self.catalog.complete_checkpoint(
            self.checkpoint_id,
            processed_count=processed + summary.count,
        )
        summary.completed = True
        logger.info(
            "Reprocess-all started %d execution(s) over %d page(s)",
            summary.count,
            summary.pages,
        )
        return summary
