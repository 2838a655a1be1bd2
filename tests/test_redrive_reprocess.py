from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import allure
import pytest
from support import EngineHarness, build_tasks

from pkgflow.orchestrator.catalog import PackageCatalog
from pkgflow.orchestrator.errors import StartRejectedError
from pkgflow.orchestrator.models import (
    Cause,
    DeadLetterMessage,
    ExecutionStatus,
    PackageCursor,
)
from pkgflow.orchestrator.redrive import RedriveController
from pkgflow.orchestrator.reprocess import REPROCESS_CHECKPOINT_ID, ReprocessAllController

pytestmark = [
    allure.epic("Administrative Operations"),
    allure.feature("Redrive and Reprocess-All"),
]

BASE_TIME = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


def _dead_letter(original_input: dict[str, object], minutes: int) -> DeadLetterMessage:
    return DeadLetterMessage(
        original_input=original_input,
        cause=Cause(kind="BranchFailure", message="typescript: TaskFailure: boom"),
        captured_at=BASE_TIME + timedelta(minutes=minutes),
        document={**original_input, "branches": []},
        execution_id=f"failed-{minutes}",
    )


def test_redrive_restarts_valid_messages_and_keeps_rejected_ones(database) -> None:
    harness = EngineHarness(database, build_tasks())
    harness.dead_letters.put(_dead_letter({"package": "a", "version": "1.0.0"}, minutes=0))
    rejected_id = harness.dead_letters.put(_dead_letter({"package": "", "version": "1"}, minutes=1))
    harness.dead_letters.put(_dead_letter({"package": "c", "version": "3.0.0"}, minutes=2))
    controller = RedriveController(engine=harness.engine, dead_letters=harness.dead_letters)

    async def scenario():
        summary = await controller.redrive()
        outcomes = await harness.engine.drain()
        return summary, outcomes

    summary, outcomes = asyncio.run(scenario())

    assert (summary.attempted, summary.succeeded, summary.failed) == (3, 2, 1)
    assert len(summary.execution_ids) == 2
    assert [view.message_id for view in harness.dead_letters.list_messages()] == [rejected_id]
    assert all(outcome.status == ExecutionStatus.SUCCEEDED for outcome in outcomes)

    redriven = harness.executions.list_executions()
    assert {execution.package for execution in redriven} == {"a", "c"}
    assert {execution.role for execution in redriven} == {"redrive"}


def test_redrive_leaves_message_when_start_cannot_be_recorded(database, monkeypatch) -> None:
    harness = EngineHarness(database, build_tasks())
    message_id = harness.dead_letters.put(_dead_letter({"package": "a", "version": "1"}, minutes=0))
    controller = RedriveController(engine=harness.engine, dead_letters=harness.dead_letters)

    async def _rejecting_start(work_item, **kwargs):
        raise StartRejectedError("database is locked")

    monkeypatch.setattr(harness.engine, "start", _rejecting_start)

    summary = asyncio.run(controller.redrive())

    assert (summary.attempted, summary.succeeded, summary.failed) == (1, 0, 1)
    assert harness.dead_letters.list_messages()[0].message_id == message_id


def test_redrive_respects_limit(database) -> None:
    harness = EngineHarness(database, build_tasks())
    for minutes in range(3):
        harness.dead_letters.put(
            _dead_letter({"package": f"p{minutes}", "version": "1"}, minutes=minutes),
        )
    controller = RedriveController(engine=harness.engine, dead_letters=harness.dead_letters)

    async def scenario():
        summary = await controller.redrive(limit=2)
        await harness.engine.drain()
        return summary

    summary = asyncio.run(scenario())

    assert summary.attempted == 2
    assert harness.dead_letters.count() == 1
    with pytest.raises(ValueError, match="limit"):
        asyncio.run(controller.redrive(limit=0))


def _seed_catalog(catalog: PackageCatalog, count: int) -> None:
    for index in range(count):
        catalog.record_ingested(package=f"pkg-{chr(ord('a') + index)}", version="1.0.0")


def test_reprocess_all_starts_one_execution_per_entry(database) -> None:
    harness = EngineHarness(database, build_tasks())
    catalog = PackageCatalog(database.engine)
    _seed_catalog(catalog, 5)
    controller = ReprocessAllController(engine=harness.engine, catalog=catalog, page_size=2)

    async def scenario():
        summary = await controller.reprocess_all()
        await harness.engine.drain()
        return summary

    summary = asyncio.run(scenario())

    assert summary.count == 5
    assert summary.pages == 3
    assert summary.completed
    assert summary.resumed_from is None
    executions = harness.executions.list_executions()
    assert len(executions) == 5
    assert {execution.role for execution in executions} == {"reprocess-all"}
    assert catalog.open_checkpoint(REPROCESS_CHECKPOINT_ID) == (None, 0)


def test_reprocess_all_resumes_after_last_completed_page(database, monkeypatch) -> None:
    harness = EngineHarness(database, build_tasks())
    catalog = PackageCatalog(database.engine)
    _seed_catalog(catalog, 5)
    controller = ReprocessAllController(engine=harness.engine, catalog=catalog, page_size=2)

    original_start = harness.engine.start
    failures = {"pkg-d": 1}

    async def _flaky_start(work_item, **kwargs):
        if failures.get(work_item.package, 0) > 0:
            failures[work_item.package] -= 1
            raise StartRejectedError("database is locked")
        return await original_start(work_item, **kwargs)

    monkeypatch.setattr(harness.engine, "start", _flaky_start)

    async def interrupted():
        with pytest.raises(StartRejectedError):
            await controller.reprocess_all()
        await harness.engine.drain()

    asyncio.run(interrupted())
    assert catalog.open_checkpoint(REPROCESS_CHECKPOINT_ID) == (
        PackageCursor(package="pkg-b", version="1.0.0"),
        2,
    )

    async def resumed():
        summary = await controller.reprocess_all()
        await harness.engine.drain()
        return summary

    summary = asyncio.run(resumed())

    assert summary.resumed_from == PackageCursor(package="pkg-b", version="1.0.0")
    assert summary.completed
    assert summary.count == 3
    assert summary.previously_started == 2
    assert len(summary.execution_ids) == 3
    started = sorted(execution.package for execution in harness.executions.list_executions())
    # pkg-c belonged to the interrupted page and is started again.
    assert started == ["pkg-a", "pkg-b", "pkg-c", "pkg-c", "pkg-d", "pkg-e"]


def test_reprocess_all_on_empty_catalog_completes(database) -> None:
    harness = EngineHarness(database, build_tasks())
    controller = ReprocessAllController(
        engine=harness.engine,
        catalog=PackageCatalog(database.engine),
    )

    summary = asyncio.run(controller.reprocess_all())

    assert summary.count == 0
    assert summary.pages == 0
    assert summary.completed
