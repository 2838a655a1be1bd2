"""Redrive of dead-lettered executions."""

from __future__ import annotations

import logging

from pkgflow.orchestrator.dead_letter import DeadLetterQueue
from pkgflow.orchestrator.engine import ExecutionHandle, WorkflowEngine
from pkgflow.orchestrator.errors import PipelineError
from pkgflow.orchestrator.models import RedriveSummary, WorkItem

logger = logging.getLogger(__name__)

REDRIVE_ROLE = "redrive"


class RedriveController:
    """Drains the dead letter queue by restarting each message's original input.

    A message is deleted only after its new execution has been durably
    started. A message whose start fails stays in the queue and is not tried
    again during the same drain.
    """

    def __init__(self, *, engine: WorkflowEngine, dead_letters: DeadLetterQueue) -> None:
        self.engine = engine
        self.dead_letters = dead_letters

    async def redrive(self, *, limit: int | None = None) -> RedriveSummary:
        if limit is not None and limit <= 0:
            raise ValueError("Redrive limit must be > 0.")

        summary = RedriveSummary()
        skipped: set[str] = set()
        while limit is None or summary.attempted < limit:
            view = self.dead_letters.receive(exclude=skipped)
            if view is None:
                break
            summary.attempted += 1
            handle = await self._restart(view.message_id, view.message.original_input)
            if handle is None:
                summary.failed += 1
                skipped.add(view.message_id)
                continue

            self.dead_letters.delete(view.message_id)
            summary.succeeded += 1
            summary.execution_ids.append(handle.execution_id)

        logger.info(
            "Redrive finished: attempted=%d succeeded=%d failed=%d",
            summary.attempted,
            summary.succeeded,
            summary.failed,
        )
        return summary

    async def _restart(
        self,
        message_id: str,
        original_input: dict[str, object],
    ) -> ExecutionHandle | None:
        try:
            work_item = WorkItem.from_payload(original_input)
            return await self.engine.start(work_item, role=REDRIVE_ROLE)
        except (PipelineError, ValueError) as error:
            logger.warning("Redrive of dead letter %s failed to start: %s", message_id, error)
            return None
