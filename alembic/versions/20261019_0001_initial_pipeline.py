"""Initial pipeline schema: executions, events, dead letters, package catalog."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "executions",
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("package", sa.String(), nullable=False),
        sa.Column("version", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_stage", sa.String(), nullable=False),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("input_json", sa.Text(), nullable=False),
        sa.Column("document_json", sa.Text(), nullable=True),
        sa.Column("cause_kind", sa.String(), nullable=True),
        sa.Column("cause_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("execution_id"),
    )
    op.create_index("ix_executions_name", "executions", ["name"], unique=False)
    op.create_index("ix_executions_package", "executions", ["package"], unique=False)
    op.create_index("ix_executions_status", "executions", ["status"], unique=False)
    op.create_index("ix_executions_cause_kind", "executions", ["cause_kind"], unique=False)
    op.create_index(
        "idx_executions_status_started",
        "executions",
        ["status", "started_at"],
        unique=False,
    )

    op.create_table(
        "execution_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("stage_from", sa.String(), nullable=True),
        sa.Column("stage_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["execution_id"],
            ["executions.execution_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_execution_events_event_type",
        "execution_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_execution_events_execution_time",
        "execution_events",
        ["execution_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "dead_letters",
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("execution_id", sa.String(), nullable=True),
        sa.Column("original_input_json", sa.Text(), nullable=False),
        sa.Column("cause_kind", sa.String(), nullable=False),
        sa.Column("cause_message", sa.Text(), nullable=False),
        sa.Column("document_json", sa.Text(), nullable=False),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index("ix_dead_letters_cause_kind", "dead_letters", ["cause_kind"], unique=False)
    op.create_index(
        "uq_dead_letters_execution",
        "dead_letters",
        ["execution_id"],
        unique=True,
    )
    op.create_index("idx_dead_letters_captured", "dead_letters", ["captured_at"], unique=False)

    op.create_table(
        "packages",
        sa.Column("package", sa.String(), nullable=False),
        sa.Column("version", sa.String(), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("package", "version", name="pk_packages"),
    )

    op.create_table(
        "reprocess_checkpoints",
        sa.Column("checkpoint_id", sa.String(), nullable=False),
        sa.Column("cursor_package", sa.String(), nullable=True),
        sa.Column("cursor_version", sa.String(), nullable=True),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("checkpoint_id"),
    )


def downgrade() -> None:
    op.drop_table("reprocess_checkpoints")
    op.drop_table("packages")
    op.drop_index("idx_dead_letters_captured", table_name="dead_letters")
    op.drop_index("uq_dead_letters_execution", table_name="dead_letters")
    op.drop_index("ix_dead_letters_cause_kind", table_name="dead_letters")
    op.drop_table("dead_letters")
    op.drop_index("idx_execution_events_execution_time", table_name="execution_events")
    op.drop_index("ix_execution_events_event_type", table_name="execution_events")
    op.drop_table("execution_events")
    op.drop_index("idx_executions_status_started", table_name="executions")
    op.drop_index("ix_executions_cause_kind", table_name="executions")
    op.drop_index("ix_executions_status", table_name="executions")
    op.drop_index("ix_executions_package", table_name="executions")
    op.drop_index("ix_executions_name", table_name="executions")
    op.drop_table("executions")
