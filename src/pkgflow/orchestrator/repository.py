"""Persistent execution records and their event trail."""

from __future__ import annotations

from typing import Any

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from pkgflow.orchestrator.models import (
    Cause,
    ExecutionContext,
    ExecutionEventView,
    ExecutionStatus,
    ExecutionView,
    PipelineState,
    WorkItem,
)
from pkgflow.storage.common import (
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from pkgflow.storage.sqlmodel_models import Execution, ExecutionEvent


class ExecutionRepository:
    """Execution persistence facade backed by SQLModel + SQLite."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_execution(self, *, context: ExecutionContext, work_item: WorkItem) -> None:
        """Insert a running execution row for a freshly initialized context."""

        now = utc_now()
        with Session(self.engine) as session:
            session.add(
                Execution(
                    execution_id=context.execution_id,
                    name=context.name,
                    role=context.role,
                    package=work_item.package,
                    version=work_item.version,
                    status=ExecutionStatus.RUNNING.value,
                    current_stage=context.current_stage.value,
                    timeout_seconds=context.timeout_seconds,
                    input_json=dump_json(work_item.to_payload()),
                    started_at=to_db_datetime(context.start_time),
                    updated_at=to_db_datetime(now),
                ),
            )
            self._add_event(
                session=session,
                execution_id=context.execution_id,
                event_type="started",
                stage_from=None,
                stage_to=context.current_stage,
                details={"role": context.role, "name": context.name},
            )
            session.commit()

    def record_transition(
        self,
        *,
        execution_id: str,
        stage_from: PipelineState,
        stage_to: PipelineState,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Persist stage-completion bookkeeping for a running execution."""

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status) == ExecutionStatus.RUNNING.value,
                )
                .values(current_stage=stage_to.value, updated_at=to_db_datetime(now)),
            )
            self._add_event(
                session=session,
                execution_id=execution_id,
                event_type=event_type,
                stage_from=stage_from,
                stage_to=stage_to,
                details=details or {},
            )
            session.commit()

    def finish_execution(
        self,
        *,
        execution_id: str,
        status: ExecutionStatus,
        document: dict[str, Any],
        cause: Cause | None,
    ) -> bool:
        """Move a running execution to its terminal status."""

        if status == ExecutionStatus.RUNNING:
            raise ValueError(f"Unsupported terminal status: {status}")

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status) == ExecutionStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    document_json=dump_json(document),
                    cause_kind=cause.kind if cause is not None else None,
                    cause_message=cause.message if cause is not None else None,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                execution_id=execution_id,
                event_type=status.value,
                stage_from=None,
                stage_to=None,
                details=cause.to_payload() if cause is not None else {},
            )
            session.commit()
            return True

    def get_execution(self, *, execution_id: str) -> ExecutionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Execution).where(Execution.execution_id == execution_id),
            ).one_or_none()
        return _to_execution_view(row) if row is not None else None

    def list_executions(
        self,
        *,
        status: ExecutionStatus | None = None,
        limit: int = 50,
    ) -> list[ExecutionView]:
        """List recent executions, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Execution)
            if status is not None:
                statement = statement.where(Execution.status == status.value)
            statement = statement.order_by(col(Execution.started_at).desc()).limit(limit)
            rows = session.exec(statement).all()
        return [_to_execution_view(row) for row in rows]

    def list_events(self, *, execution_id: str) -> list[ExecutionEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionEvent)
                .where(ExecutionEvent.execution_id == execution_id)
                .order_by(col(ExecutionEvent.created_at).asc(), col(ExecutionEvent.id).asc()),
            ).all()
        return [
            ExecutionEventView(
                event_id=row.id or 0,
                execution_id=row.execution_id,
                event_type=row.event_type,
                stage_from=PipelineState(row.stage_from) if row.stage_from is not None else None,
                stage_to=PipelineState(row.stage_to) if row.stage_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in rows
        ]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        execution_id: str,
        event_type: str,
        stage_from: PipelineState | None,
        stage_to: PipelineState | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            ExecutionEvent(
                execution_id=execution_id,
                event_type=event_type,
                stage_from=stage_from.value if stage_from is not None else None,
                stage_to=stage_to.value if stage_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _to_execution_view(row: Execution) -> ExecutionView:
    cause = (
        Cause(kind=row.cause_kind, message=row.cause_message or "")
        if row.cause_kind is not None
        else None
    )
    return ExecutionView(
        execution_id=row.execution_id,
        name=row.name,
        role=row.role,
        package=row.package,
        version=row.version,
        status=ExecutionStatus(row.status),
        current_stage=PipelineState(row.current_stage),
        timeout_seconds=row.timeout_seconds,
        original_input=load_json_object(row.input_json),
        document=load_json_object(row.document_json) if row.document_json else None,
        cause=cause,
        started_at=to_utc_aware_datetime(row.started_at),
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
