"""Durable catalog of ingested package versions and reprocess checkpoints."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import and_, func, or_
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from pkgflow.orchestrator.models import PackageCursor, PackageEntry, PackagePage
from pkgflow.storage.common import (
    dump_json,
    load_json_object,
    to_utc_aware_datetime,
    utc_now,
)
from pkgflow.storage.sqlmodel_models import PackageVersion, ReprocessCheckpoint


class PackageCatalog:
    """Package catalog persistence backed by SQLModel + SQLite."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def record_ingested(
        self,
        *,
        package: str,
        version: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> PackageEntry:
        """Insert or refresh one ingested package version."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(PackageVersion, (package, version))
            if row is None:
                row = PackageVersion(package=package, version=version, ingested_at=now)
            row.metadata_json = dump_json(dict(metadata)) if metadata else None
            row.ingested_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_entry(row)

    def list_page(self, *, after: PackageCursor | None, limit: int) -> PackagePage:
        """Return up to ``limit`` entries ordered by (package, version) after ``after``."""

        with Session(self.engine) as session:
            statement = select(PackageVersion)
            if after is not None:
                statement = statement.where(
                    or_(
                        col(PackageVersion.package) > after.package,
                        and_(
                            col(PackageVersion.package) == after.package,
                            col(PackageVersion.version) > after.version,
                        ),
                    ),
                )
            rows = session.exec(
                statement.order_by(
                    col(PackageVersion.package).asc(),
                    col(PackageVersion.version).asc(),
                ).limit(limit),
            ).all()

        entries = [_to_entry(row) for row in rows]
        next_cursor = (
            PackageCursor(package=entries[-1].package, version=entries[-1].version)
            if len(entries) == limit
            else None
        )
        return PackagePage(entries=entries, next_cursor=next_cursor)

    def count(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(PackageVersion)).one())

    def open_checkpoint(self, checkpoint_id: str) -> tuple[PackageCursor | None, int]:
        """Resume an unfinished checkpoint or start a fresh one.

        Returns the cursor after the last fully processed page and the number
        of items already started under this checkpoint.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(ReprocessCheckpoint, checkpoint_id)
            if row is not None and row.completed_at is None:
                cursor = (
                    PackageCursor(package=row.cursor_package, version=row.cursor_version)
                    if row.cursor_package is not None and row.cursor_version is not None
                    else None
                )
                return cursor, row.processed_count

            if row is None:
                row = ReprocessCheckpoint(
                    checkpoint_id=checkpoint_id,
                    started_at=now,
                    updated_at=now,
                )
            row.cursor_package = None
            row.cursor_version = None
            row.processed_count = 0
            row.started_at = now
            row.updated_at = now
            row.completed_at = None
            session.add(row)
            session.commit()
            return None, 0

    def save_checkpoint(
        self,
        checkpoint_id: str,
        *,
        cursor: PackageCursor,
        processed_count: int,
    ) -> None:
        with Session(self.engine) as session:
            row = session.get(ReprocessCheckpoint, checkpoint_id)
            if row is None:
                raise RuntimeError(f"Checkpoint not found: {checkpoint_id}")
            row.cursor_package = cursor.package
            row.cursor_version = cursor.version
            row.processed_count = processed_count
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def complete_checkpoint(self, checkpoint_id: str, *, processed_count: int) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(ReprocessCheckpoint, checkpoint_id)
            if row is None:
                raise RuntimeError(f"Checkpoint not found: {checkpoint_id}")
            row.processed_count = processed_count
            row.updated_at = now
            row.completed_at = now
            session.add(row)
            session.commit()


def _to_entry(row: PackageVersion) -> PackageEntry:
    return PackageEntry(
        package=row.package,
        version=row.version,
        metadata=load_json_object(row.metadata_json),
        ingested_at=to_utc_aware_datetime(row.ingested_at),
    )
