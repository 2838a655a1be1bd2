"""Durable dead letter queue of failed executions."""

from __future__ import annotations

from collections.abc import Collection
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from pkgflow.orchestrator.errors import DeadLetterWriteError
from pkgflow.orchestrator.models import Cause, DeadLetterMessage, DeadLetterView
from pkgflow.storage.common import (
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
)
from pkgflow.storage.sqlmodel_models import DeadLetter


class DeadLetterQueue:
    """Dead letter persistence backed by SQLModel + SQLite.

    Messages are written in one transaction each and are only ever removed
    by :meth:`delete`, which redrive calls after a successful start.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def put(self, message: DeadLetterMessage) -> str:
        """Durably store one message and return its queue id."""

        message_id = str(uuid4())
        try:
            original_input_json = dump_json(message.original_input)
            document_json = dump_json(message.document)
        except (TypeError, ValueError) as error:
            raise DeadLetterWriteError(
                f"Dead letter for execution {message.execution_id} is not serializable: {error}",
            ) from error
        try:
            with Session(self.engine) as session:
                session.add(
                    DeadLetter(
                        message_id=message_id,
                        execution_id=message.execution_id,
                        original_input_json=original_input_json,
                        cause_kind=message.cause.kind,
                        cause_message=message.cause.message,
                        document_json=document_json,
                        captured_at=to_db_datetime(message.captured_at),
                    ),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise DeadLetterWriteError(
                f"Failed to write dead letter for execution {message.execution_id}: {error}",
            ) from error
        return message_id

    def receive(self, *, exclude: Collection[str] = ()) -> DeadLetterView | None:
        """Return the oldest message not listed in ``exclude`` without removing it."""

        with Session(self.engine) as session:
            statement = select(DeadLetter)
            if exclude:
                statement = statement.where(col(DeadLetter.message_id).not_in(list(exclude)))
            row = session.exec(
                statement.order_by(
                    col(DeadLetter.captured_at).asc(),
                    col(DeadLetter.message_id).asc(),
                ).limit(1),
            ).one_or_none()
        return _to_view(row) if row is not None else None

    def list_messages(self, *, limit: int = 50) -> list[DeadLetterView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DeadLetter)
                .order_by(col(DeadLetter.captured_at).asc(), col(DeadLetter.message_id).asc())
                .limit(limit),
            ).all()
        return [_to_view(row) for row in rows]

    def delete(self, message_id: str) -> bool:
        """Remove one message; returns False when it was already gone."""

        with Session(self.engine) as session:
            row = session.get(DeadLetter, message_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def count(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(DeadLetter)).one())


def _to_view(row: DeadLetter) -> DeadLetterView:
    return DeadLetterView(
        message_id=row.message_id,
        message=DeadLetterMessage(
            original_input=load_json_object(row.original_input_json),
            cause=Cause(kind=row.cause_kind, message=row.cause_message),
            captured_at=to_utc_aware_datetime(row.captured_at),
            document=load_json_object(row.document_json),
            execution_id=row.execution_id,
        ),
    )
