from __future__ import annotations

import allure
import pytest

from pkgflow.orchestrator.errors import TaskError
from pkgflow.orchestrator.failure_classifier import (
    CAUSE_CLASSIFIER_VERSION,
    cause_from_exception,
    classify_failure_text,
)
from pkgflow.orchestrator.models import FailureKind

pytestmark = [
    allure.epic("Pipeline Engine"),
    allure.feature("Failure Classification"),
]


def test_structured_error_document_wins_over_patterns() -> None:
    classification = classify_failure_text(
        '{"errorType": "ThrottlingException", "errorMessage": "timeout while writing"}',
    )

    assert classification.cause.kind == FailureKind.TOO_MANY_REQUESTS.value
    assert classification.cause.message == "timeout while writing"
    assert classification.matched_rule == "structured_json"


def test_structured_error_keeps_unknown_kinds_verbatim() -> None:
    classification = classify_failure_text('{"kind": "OutOfMemory", "message": "heap"}')

    assert classification.cause.kind == "OutOfMemory"
    assert classification.cause.message == "heap"


@pytest.mark.parametrize(
    ("text", "kind", "rule"),
    [
        ("HTTP 429 Too Many Requests", FailureKind.TOO_MANY_REQUESTS.value, "too_many_requests"),
        ("upstream request timed out", FailureKind.TASK_TIMEOUT.value, "task_timeout"),
        ("503 Service Unavailable", FailureKind.TRANSIENT.value, "generic_transient"),
        ("TypeError: x is not a function", FailureKind.TASK_FAILURE.value, "fallback_task_failure"),
    ],
)
def test_pattern_rules(text: str, kind: str, rule: str) -> None:
    classification = classify_failure_text(text)

    assert classification.cause.kind == kind
    assert classification.matched_rule == rule
    assert classification.cause.message == text


def test_empty_output_falls_back_to_task_failure() -> None:
    classification = classify_failure_text("   ")

    assert classification.cause.kind == FailureKind.TASK_FAILURE.value
    assert classification.cause.message == "Task failed without diagnostic output."


def test_malformed_json_is_classified_as_text() -> None:
    classification = classify_failure_text('{"errorType": "Throttl')

    assert classification.matched_rule == "too_many_requests"


def test_event_details_carry_classifier_version() -> None:
    details = classify_failure_text("connection reset by peer").to_event_details()

    assert details["classifier_version"] == CAUSE_CLASSIFIER_VERSION
    assert details["kind"] == FailureKind.TRANSIENT.value
    assert details["matched_pattern"] == "connection reset"


def test_cause_from_exception_types() -> None:
    assert cause_from_exception(TaskError("x", kind="Throttled")).kind == (
        FailureKind.TOO_MANY_REQUESTS.value
    )
    assert cause_from_exception(TimeoutError()).kind == FailureKind.TASK_TIMEOUT.value
    assert cause_from_exception(ConnectionResetError("peer")).kind == FailureKind.TRANSIENT.value
    assert cause_from_exception(RuntimeError()).message == "RuntimeError"
    assert cause_from_exception(RuntimeError("Rate exceeded")).kind == (
        FailureKind.TOO_MANY_REQUESTS.value
    )
