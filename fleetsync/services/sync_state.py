"""Durable sync progress — the singleton state row and the detail queue.

The state row is single-writer: callers must not run two engines against
the same database at once.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import SYNC_STATE_ID, ServiceOrder, ServiceOrderSyncState, SyncQueueEntry
from .batch_writer import BatchUpsertWriter, ConflictPolicy

PHASES = ("headers", "details", "complete")
STATUSES = ("idle", "running", "paused", "failed")

_DEFAULTS = {
    "current_phase": "headers",
    "status": "idle",
    "highest_order_id": None,
    "last_order_id": None,
    "total_synced": 0,
    "total_details_synced": 0,
    "last_error": None,
}


@dataclass(frozen=True)
class SyncSnapshot:
    """State as it was when a run started."""

    current_phase: str
    status: str
    highest_order_id: int | None
    last_order_id: int | None
    total_synced: int
    total_details_synced: int
    last_error: str | None
    last_sync_at: datetime | None


class SyncStateStore:
    def __init__(self, db: Session, writer: BatchUpsertWriter | None = None):
        self.db = db
        self.writer = writer or BatchUpsertWriter(db)

    # ── State row ────────────────────────────────────────────────────

    def _row(self) -> ServiceOrderSyncState:
        row = self.db.get(ServiceOrderSyncState, SYNC_STATE_ID)
        if row is None:
            row = ServiceOrderSyncState(id=SYNC_STATE_ID, **_DEFAULTS)
            self.db.add(row)
            self.db.commit()
            logger.info("Initialized service order sync state")
        return row

    def load(self) -> SyncSnapshot:
        row = self._row()
        return SyncSnapshot(
            current_phase=row.current_phase,
            status=row.status,
            highest_order_id=row.highest_order_id,
            last_order_id=row.last_order_id,
            total_synced=row.total_synced or 0,
            total_details_synced=row.total_details_synced or 0,
            last_error=row.last_error,
            last_sync_at=row.last_sync_at,
        )

    def update(self, **fields) -> None:
        row = self._row()
        for key, value in fields.items():
            if key == "current_phase" and value not in PHASES:
                raise ValueError(f"Unknown sync phase: {value}")
            if key == "status" and value not in STATUSES:
                raise ValueError(f"Unknown sync status: {value}")
            setattr(row, key, value)
        self.db.commit()

    def advance_highest(self, order_id: int) -> int:
        """Record progress up to order_id. The stored maximum never decreases."""
        row = self._row()
        highest = max(row.highest_order_id or 0, order_id)
        row.highest_order_id = highest
        row.last_order_id = order_id
        self.db.commit()
        return highest

    def mark_running(self) -> None:
        self.update(status="running", last_error=None)

    def mark_paused(self) -> None:
        self.update(status="paused")

    def mark_failed(self, error: str) -> None:
        self.update(status="failed", last_error=error)

    def mark_complete(self) -> None:
        self.update(
            status="idle",
            current_phase="complete",
            last_sync_at=datetime.now(timezone.utc),
        )

    def reset(self) -> None:
        """Re-initialize progress. The row itself is never deleted."""
        self.update(**_DEFAULTS)
        logger.warning("Service order sync state reset")

    # ── Detail queue ─────────────────────────────────────────────────

    def enqueue(self, order_ids: list[int], priority: int = 0) -> int:
        records = [{"order_id": oid, "priority": priority} for oid in order_ids]
        return self.writer.upsert(
            SyncQueueEntry, records, key_columns=["order_id"], policy=ConflictPolicy.IGNORE
        )

    def record_queue_attempt(self, order_id: int, error: str | None) -> None:
        entry = self.db.get(SyncQueueEntry, order_id)
        if entry is None:
            entry = SyncQueueEntry(order_id=order_id, priority=0, attempts=0)
            self.db.add(entry)
        entry.attempts = (entry.attempts or 0) + 1
        entry.last_attempt_at = datetime.now(timezone.utc)
        entry.error_message = error
        self.db.commit()

    def complete_queue_entry(self, order_id: int) -> None:
        entry = self.db.get(SyncQueueEntry, order_id)
        if entry is not None:
            self.db.delete(entry)
            self.db.commit()

    def pending_queue_size(self) -> int:
        return (
            self.db.query(func.count(SyncQueueEntry.order_id))
            .join(ServiceOrder, ServiceOrder.id == SyncQueueEntry.order_id)
            .filter(ServiceOrder.details_synced.is_(False))
            .scalar()
        ) or 0
