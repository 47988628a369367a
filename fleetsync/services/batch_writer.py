"""
batch_writer.py — Transactional, chunked insert-or-update.

One upsert() call is one transaction: records are written in chunks of
chunk_size, and a failure in any chunk rolls back every chunk of the call.
Separate calls are independent — a failed page never undoes earlier pages.

Conflict policies:
- UPDATE: insert, or overwrite all non-key columns and stamp synced_at
- IGNORE: insert, or leave the existing row untouched

Re-running the same batch converges to the same stored rows.

An optional on_write(table_name, rows) observer fires after each committed call.

Called by: services/header_sync.py, services/detail_sync.py, services/sync_state.py
"""

import enum
from datetime import datetime, timezone
from typing import Callable

from loguru import logger
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import ConfigurationError

SYNC_COLUMN = "synced_at"


class ConflictPolicy(str, enum.Enum):
    UPDATE = "update"
    IGNORE = "ignore"


class BatchUpsertWriter:
    def __init__(
        self,
        db: Session,
        chunk_size: int = 100,
        on_write: Callable[[str, int], None] | None = None,
    ):
        self.db = db
        self.chunk_size = chunk_size
        self.on_write = on_write

    def upsert(
        self,
        model,
        records: list[dict],
        key_columns: list[str],
        columns: list[str] | None = None,
        policy: ConflictPolicy = ConflictPolicy.UPDATE,
    ) -> int:
        """Write records into model's table. Returns affected row count."""
        if not records:
            return 0

        table = model.__table__
        columns = list(columns or records[0].keys())
        unknown = [c for c in columns + key_columns if c not in table.c]
        if unknown:
            raise ConfigurationError(f"{table.name} has no column(s): {', '.join(unknown)}")

        stamp = SYNC_COLUMN in table.c and policy is ConflictPolicy.UPDATE
        insert = dialect_insert(self.db)
        total = 0

        try:
            for start in range(0, len(records), self.chunk_size):
                chunk = records[start:start + self.chunk_size]
                now = datetime.now(timezone.utc)
                rows = []
                for rec in chunk:
                    row = {c: rec.get(c) for c in columns}
                    if stamp:
                        row[SYNC_COLUMN] = now
                    rows.append(row)

                stmt = insert(table).values(rows)
                if policy is ConflictPolicy.IGNORE:
                    stmt = stmt.on_conflict_do_nothing(index_elements=key_columns)
                else:
                    updates = {
                        c: stmt.excluded[c]
                        for c in rows[0]
                        if c not in key_columns
                    }
                    if updates:
                        stmt = stmt.on_conflict_do_update(index_elements=key_columns, set_=updates)
                    else:
                        stmt = stmt.on_conflict_do_nothing(index_elements=key_columns)

                result = self.db.execute(stmt)
                affected = result.rowcount
                total += affected if affected is not None and affected >= 0 else len(chunk)

            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Upsert into {} failed — rolled back {} record(s)", table.name, len(records))
            raise

        logger.debug("Upserted {} row(s) into {}", total, table.name)
        if self.on_write:
            self.on_write(table.name, total)
        return total


def dialect_insert(db: Session):
    """The ON CONFLICT-capable insert() for the session's database."""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise ConfigurationError(f"Upsert not supported for dialect: {name}")
