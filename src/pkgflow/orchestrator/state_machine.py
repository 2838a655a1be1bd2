"""Transition table for the per-execution pipeline state machine."""

from __future__ import annotations

from enum import Enum

from pkgflow.orchestrator.errors import InvalidTransitionError
from pkgflow.orchestrator.models import PipelineState


class PipelineEvent(str, Enum):
    """Events emitted by stage handlers."""

    INITIALIZED = "initialized"
    BRANCHES_JOINED = "branches_joined"
    ANY_SUCCEEDED = "any_succeeded"
    NONE_SUCCEEDED = "none_succeeded"
    CATALOG_UPDATED = "catalog_updated"
    CATALOG_UPDATE_FAILED = "catalog_update_failed"
    NO_BRANCH_ERRORS = "no_branch_errors"
    BRANCH_ERRORS = "branch_errors"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset({PipelineState.SUCCESS, PipelineState.FAILED})

TRANSITIONS: dict[tuple[PipelineState, PipelineEvent], PipelineState] = {
    (PipelineState.INIT, PipelineEvent.INITIALIZED): PipelineState.FAN_OUT,
    (PipelineState.FAN_OUT, PipelineEvent.BRANCHES_JOINED): PipelineState.AGGREGATE,
    (PipelineState.AGGREGATE, PipelineEvent.ANY_SUCCEEDED): PipelineState.CATALOG_UPDATE,
    (PipelineState.AGGREGATE, PipelineEvent.NONE_SUCCEEDED): PipelineState.DLQ_CHECK,
    (PipelineState.CATALOG_UPDATE, PipelineEvent.CATALOG_UPDATED): PipelineState.DLQ_CHECK,
    (PipelineState.CATALOG_UPDATE, PipelineEvent.CATALOG_UPDATE_FAILED): PipelineState.FAILED,
    (PipelineState.DLQ_CHECK, PipelineEvent.NO_BRANCH_ERRORS): PipelineState.SUCCESS,
    (PipelineState.DLQ_CHECK, PipelineEvent.BRANCH_ERRORS): PipelineState.FAILED,
    **{
        (state, PipelineEvent.TIMED_OUT): PipelineState.FAILED
        for state in PipelineState
        if state not in TERMINAL_STATES
    },
}


def next_state(state: PipelineState, event: PipelineEvent) -> PipelineState:
    """Resolve the transition for ``event`` in ``state``."""

    try:
        return TRANSITIONS[(state, event)]
    except KeyError as error:
        raise InvalidTransitionError(
            f"Event {event.value!r} is not accepted in state {state.value!r}.",
        ) from error
