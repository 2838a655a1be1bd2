"""Deterministic task failure classification into structured causes."""

from __future__ import annotations

import json
from dataclasses import dataclass

from pkgflow.orchestrator.errors import TaskError
from pkgflow.orchestrator.models import Cause, FailureKind

CAUSE_CLASSIFIER_VERSION = 1

_TOO_MANY_REQUESTS_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "toomanyrequests",
    "throttl",
    "rate exceeded",
    "rate limit",
    "429",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "please retry",
    "try again later",
)
_KIND_KEYS: tuple[str, ...] = ("kind", "errorType", "error")
_MESSAGE_KEYS: tuple[str, ...] = ("message", "errorMessage", "cause")


@dataclass(slots=True)
class CauseClassification:
    """Normalized failure classification result."""

    cause: Cause
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for execution events."""

        return {
            "classifier_version": CAUSE_CLASSIFIER_VERSION,
            "kind": self.cause.kind,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure_text(text: str) -> CauseClassification:
    """Turn raw task failure output into a structured cause.

    A JSON error document (``{"errorType", "errorMessage"}`` or
    ``{"kind", "message"}``) wins over pattern rules; anything unrecognized
    falls back to a non-retryable ``TaskFailure``.
    """

    stripped = text.strip()
    structured = _parse_structured_cause(stripped)
    if structured is not None:
        return CauseClassification(
            cause=structured,
            matched_rule="structured_json",
            matched_pattern=None,
        )

    message = stripped or "Task failed without diagnostic output."
    haystack = stripped.lower()

    pattern = _first_match(haystack, _TOO_MANY_REQUESTS_PATTERNS)
    if pattern is not None:
        return CauseClassification(
            cause=Cause(kind=FailureKind.TOO_MANY_REQUESTS.value, message=message),
            matched_rule="too_many_requests",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return CauseClassification(
            cause=Cause(kind=FailureKind.TASK_TIMEOUT.value, message=message),
            matched_rule="task_timeout",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return CauseClassification(
            cause=Cause(kind=FailureKind.TRANSIENT.value, message=message),
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    return CauseClassification(
        cause=Cause(kind=FailureKind.TASK_FAILURE.value, message=message),
        matched_rule="fallback_task_failure",
        matched_pattern=None,
    )


def cause_from_exception(error: BaseException) -> Cause:
    """Build the structured cause for an exception raised by a task body."""

    if isinstance(error, TaskError):
        return Cause(kind=normalize_kind(error.kind), message=error.message)
    if isinstance(error, TimeoutError):
        return Cause(
            kind=FailureKind.TASK_TIMEOUT.value,
            message=str(error) or "Task invocation timed out.",
        )
    if isinstance(error, ConnectionError):
        return Cause(
            kind=FailureKind.TRANSIENT.value,
            message=str(error) or type(error).__name__,
        )
    text = str(error)
    if not text:
        return Cause(kind=FailureKind.TASK_FAILURE.value, message=type(error).__name__)
    return classify_failure_text(text).cause


def normalize_kind(kind: str) -> str:
    """Map vendor-specific throttling kinds onto ``TooManyRequests``."""

    lowered = kind.lower()
    if "toomanyrequests" in lowered or "throttl" in lowered:
        return FailureKind.TOO_MANY_REQUESTS.value
    return kind


def _parse_structured_cause(text: str) -> Cause | None:
    if not text.startswith("{"):
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    kind = _first_string(payload, _KIND_KEYS)
    if kind is None:
        return None
    message = _first_string(payload, _MESSAGE_KEYS) or kind
    return Cause(kind=normalize_kind(kind), message=message)


def _first_string(payload: dict[str, object], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
