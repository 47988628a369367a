"""Sync models — resumable state, detail queue, rate tracking and audit log."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)

from .base import Base

SYNC_STATE_ID = 1


class ServiceOrderSyncState(Base):
    """Singleton progress row for the service order sync."""

    __tablename__ = "service_order_sync_state"
    id = Column(Integer, primary_key=True, default=SYNC_STATE_ID)
    current_phase = Column(String(20), nullable=False, default="headers")
    status = Column(String(20), nullable=False, default="idle")
    highest_order_id = Column(Integer)
    last_order_id = Column(Integer)
    total_synced = Column(Integer, nullable=False, default=0)
    total_details_synced = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    last_sync_at = Column(DateTime)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        CheckConstraint(f"id = {SYNC_STATE_ID}", name="ck_so_sync_state_single_row"),
        CheckConstraint(
            "current_phase IN ('headers', 'details', 'complete')",
            name="ck_so_sync_state_phase",
        ),
        CheckConstraint(
            "status IN ('idle', 'running', 'paused', 'failed')",
            name="ck_so_sync_state_status",
        ),
    )


class SyncQueueEntry(Base):
    """Service order waiting for detail enrichment."""

    __tablename__ = "service_order_sync_queue"
    order_id = Column(Integer, primary_key=True, autoincrement=False)
    priority = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime)
    error_message = Column(Text)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (Index("ix_sq_priority_attempts", "priority", "attempts"),)


class RateLimitRecord(Base):
    """Per-endpoint request tracking, written by the rate governor."""

    __tablename__ = "rate_limit_tracker"
    endpoint = Column(String(255), primary_key=True)
    last_request_at = Column(DateTime)
    request_count = Column(Integer, nullable=False, default=0)
    is_limited = Column(Boolean, nullable=False, default=False)
    reset_at = Column(DateTime)
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class SyncMetadata(Base):
    """Latest outcome per synced entity."""

    __tablename__ = "sync_metadata"
    entity_name = Column(String(50), primary_key=True)
    sync_status = Column(String(20), nullable=False, default="idle")
    last_sync_at = Column(DateTime)
    records_synced = Column(Integer, default=0)
    error_message = Column(Text)
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class SyncAuditLog(Base):
    """Append-only log of each sync run. Observational only."""

    __tablename__ = "sync_audit_log"
    id = Column(Integer, primary_key=True)
    entity_name = Column(String(50), nullable=False)
    operation = Column(String(50), nullable=False)
    record_count = Column(Integer, default=0)
    status = Column(String(20), nullable=False)
    error_message = Column(Text)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    duration_seconds = Column(Float)
    row_counts = Column(JSON)

    __table_args__ = (Index("ix_sync_audit_entity_time", "entity_name", "started_at"),)
