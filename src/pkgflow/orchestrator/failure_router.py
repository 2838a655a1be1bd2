"""Failure routing: capture a failed execution in the dead letter queue."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from pkgflow.orchestrator.dead_letter import DeadLetterQueue
from pkgflow.orchestrator.models import Cause, DeadLetterMessage, ExecutionDocument
from pkgflow.storage.common import utc_now

logger = logging.getLogger(__name__)


class FailureRouter:
    """Packages the current document and cause into one dead letter.

    The write must complete before the engine may report the execution as
    failed; :class:`~pkgflow.orchestrator.errors.DeadLetterWriteError` is
    propagated to the caller untouched.
    """

    def __init__(
        self,
        dead_letters: DeadLetterQueue,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.dead_letters = dead_letters
        self._clock = clock

    def route(self, document: ExecutionDocument, cause: Cause) -> DeadLetterMessage:
        message = DeadLetterMessage(
            original_input=document.original_input,
            cause=cause,
            captured_at=self._clock(),
            document=document.to_payload(),
            execution_id=document.context.execution_id,
        )
        message_id = self.dead_letters.put(message)
        logger.warning(
            "Execution %s (%s) dead-lettered as %s with %s: %s",
            document.context.execution_id,
            document.work_item.coordinate,
            message_id,
            cause.kind,
            cause.message,
        )
        return message
