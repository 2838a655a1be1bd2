"""SQLModel ORM tables for pipeline storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel


class Execution(SQLModel, table=True):
    __tablename__ = "executions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_executions_status_started", "status", "started_at"),)

    execution_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    role: str
    package: str = Field(index=True)
    version: str
    status: str = Field(index=True)
    current_stage: str
    timeout_seconds: int
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    document_json: str | None = Field(default=None, sa_column=Column(Text))
    cause_kind: str | None = Field(default=None, index=True)
    cause_message: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExecutionEvent(SQLModel, table=True):
    __tablename__ = "execution_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_execution_events_execution_time", "execution_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    execution_id: str = Field(
        sa_column=Column(
            ForeignKey("executions.execution_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    stage_from: str | None = None
    stage_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DeadLetter(SQLModel, table=True):
    __tablename__ = "dead_letters"  # type: ignore[bad-override]
    __table_args__ = (
        Index("uq_dead_letters_execution", "execution_id", unique=True),
        Index("idx_dead_letters_captured", "captured_at"),
    )

    message_id: str = Field(primary_key=True)
    execution_id: str | None = None
    original_input_json: str = Field(sa_column=Column(Text, nullable=False))
    cause_kind: str = Field(index=True)
    cause_message: str = Field(sa_column=Column(Text, nullable=False))
    document_json: str = Field(sa_column=Column(Text, nullable=False))
    captured_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PackageVersion(SQLModel, table=True):
    __tablename__ = "packages"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("package", "version", name="pk_packages"),)

    package: str
    version: str
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    ingested_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReprocessCheckpoint(SQLModel, table=True):
    __tablename__ = "reprocess_checkpoints"  # type: ignore[bad-override]

    checkpoint_id: str = Field(primary_key=True)
    cursor_package: str | None = None
    cursor_version: str | None = None
    processed_count: int = 0
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
