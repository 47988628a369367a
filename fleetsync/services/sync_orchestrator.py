"""
sync_orchestrator.py — Runs a service order sync end to end.

Sequences the header phase, the detail phase and the vehicle expense
rollup, keeps the sync state row current between phases, and writes the
audit log. Always returns a SyncResult; failures never escape sync().

State machine:
  status:  idle → running → (idle | paused | failed), re-enterable
  phase:   headers → details → complete

Business Rules:
- details-only skips the header phase; fetch_details=False skips details
- resume after a run interrupted in the details phase goes straight to details
- Vehicle expenses are recomputed only when items were written
- A stop request pauses the run between pages / records (status paused)
- Concurrent runs against one database are not supported; callers guard

Called by: scripts/sync_service_orders.py
Depends on: connectors/catalog_client.py, services/*
"""

import asyncio
import time
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config import Settings, settings as default_settings
from ..connectors.catalog_client import (
    CatalogClient,
    CredentialProvider,
    StaticTokenProvider,
    endpoint_for,
)
from ..http_client import build_http_client, close_client
from ..models import SyncAuditLog, SyncMetadata
from .batch_writer import BatchUpsertWriter
from .detail_sync import DetailSyncPhase
from .header_sync import HeaderSyncPhase
from .rate_governor import RateGovernor, RateLimitTracker
from .sync_state import SyncStateStore
from .sync_types import DetailSyncResult, HeaderSyncResult, SyncMode, SyncOptions, SyncResult
from .vehicle_expenses import VehicleExpenseUpdater

ENTITY = "os"


class ServiceOrderSyncEngine:
    entity_name = ENTITY

    def __init__(
        self,
        db: Session,
        client: CatalogClient,
        cfg: Settings = default_settings,
        sleep=asyncio.sleep,
        on_write=None,
    ):
        self.db = db
        self.client = client
        self.writer = BatchUpsertWriter(db, chunk_size=cfg.insert_batch_size, on_write=on_write)
        self.state = SyncStateStore(db, self.writer)
        self.header_phase = HeaderSyncPhase(
            db,
            client,
            self.writer,
            self.state,
            page_size=cfg.header_page_size,
            page_delay=cfg.header_page_delay,
            cooldown=cfg.header_cooldown,
            sleep=sleep,
        )
        self.detail_phase = DetailSyncPhase(
            db,
            client,
            self.writer,
            self.state,
            batch_size=cfg.detail_batch_size,
            batch_delay=cfg.detail_batch_delay,
            request_delay=cfg.detail_request_delay,
            max_per_run=cfg.max_records_per_run,
            sleep=sleep,
        )
        self.aggregator = VehicleExpenseUpdater(db)

    async def sync(self, options: SyncOptions | None = None) -> SyncResult:
        options = options or SyncOptions()
        started_at = datetime.now(timezone.utc)
        t0 = time.monotonic()
        headers = HeaderSyncResult()
        details = DetailSyncResult()

        try:
            logger.info("Starting service order sync with mode: {}", options.mode.value)
            snapshot = self.state.load()
            self.state.mark_running()
            self._audit(options.mode.value, 0, "started", started_at)
            self._update_metadata("running", 0)

            if self._runs_headers(options, snapshot.current_phase, snapshot.status):
                self.state.update(current_phase="headers")
                headers = await self.header_phase.run(options, snapshot)
                progress = {"total_synced": snapshot.total_synced + headers.synced}
                # a stopped walk stays in headers so resume re-enters it
                if not headers.stopped:
                    progress["current_phase"] = "details"
                self.state.update(**progress)

            if options.fetch_details and not headers.stopped:
                self.state.update(current_phase="details")
                details = await self.detail_phase.run(options)
                self.state.update(
                    total_details_synced=snapshot.total_details_synced + details.details_synced,
                )

            if details.items_synced > 0:
                self.aggregator.recompute()

            stopped = headers.stopped or details.stopped
            if stopped:
                self.state.mark_paused()
                status = "paused"
            elif options.fetch_details:
                self.state.mark_complete()
                status = "completed"
            else:
                self.state.update(status="idle", last_sync_at=datetime.now(timezone.utc))
                status = "completed"

            records = headers.synced
            if options.mode is SyncMode.DETAILS_ONLY:
                records = details.details_synced
            self._update_metadata(status, records)
            duration = time.monotonic() - t0
            self._audit(
                options.mode.value, records, status, started_at,
                datetime.now(timezone.utc), row_counts=self._counts(headers, details),
            )
            logger.info(
                "Service order sync {}. Headers: {}, Items: {}, Skipped: {}, Duration: {:.2f}s",
                status, headers.synced, details.items_synced, headers.skipped, duration,
            )
            return SyncResult(
                entity=self.entity_name,
                records_synced=records,
                success=True,
                duration=duration,
                details={
                    "mode": options.mode.value,
                    "status": status,
                    "fetched_details": options.fetch_details,
                    **self._counts(headers, details),
                },
            )

        except Exception as e:
            self.db.rollback()
            message = str(e) or e.__class__.__name__
            logger.exception("Sync failed for {}", self.entity_name)
            try:
                self.state.mark_failed(message)
                self._update_metadata("failed", headers.synced, message)
                self._audit(
                    options.mode.value, headers.synced, "failed", started_at,
                    datetime.now(timezone.utc), error=message,
                    row_counts=self._counts(headers, details),
                )
            except SQLAlchemyError:
                self.db.rollback()
                logger.exception("Could not persist failed state for {}", self.entity_name)
            return SyncResult(
                entity=self.entity_name,
                records_synced=headers.synced,
                success=False,
                duration=time.monotonic() - t0,
                error=message,
                details={"mode": options.mode.value, **self._counts(headers, details)},
            )

    @staticmethod
    def _runs_headers(options: SyncOptions, phase: str, status: str) -> bool:
        if options.mode is SyncMode.DETAILS_ONLY:
            return False
        if options.mode is SyncMode.RESUME and phase == "details" and status != "idle":
            logger.info("Resuming interrupted details phase; skipping headers")
            return False
        return True

    @staticmethod
    def _counts(headers: HeaderSyncResult, details: DetailSyncResult) -> dict:
        return {
            "headers_synced": headers.synced,
            "skipped_existing": headers.skipped,
            "filtered": headers.filtered,
            "pages": headers.pages,
            "details_synced": details.details_synced,
            "details_failed": details.failed,
            "items_synced": details.items_synced,
        }

    def _audit(self, operation, record_count, status, started_at, completed_at=None,
               error=None, row_counts=None):
        duration = None
        if completed_at:
            duration = round((completed_at - started_at).total_seconds(), 1)
        self.db.add(
            SyncAuditLog(
                entity_name=self.entity_name,
                operation=operation,
                record_count=record_count,
                status=status,
                error_message=error,
                started_at=started_at,
                completed_at=completed_at,
                duration_seconds=duration,
                row_counts=row_counts,
            )
        )
        self.db.commit()

    def _update_metadata(self, status: str, records: int, error: str | None = None):
        meta = self.db.get(SyncMetadata, self.entity_name)
        if meta is None:
            meta = SyncMetadata(entity_name=self.entity_name)
            self.db.add(meta)
        meta.sync_status = status
        meta.last_sync_at = datetime.now(timezone.utc)
        meta.records_synced = records
        meta.error_message = error
        self.db.commit()


# ── Wiring ────────────────────────────────────────────────────────────


def build_engine(
    db: Session,
    http,
    credentials: CredentialProvider | None = None,
    cfg: Settings = default_settings,
    track_rate_limits: bool = True,
) -> ServiceOrderSyncEngine:
    """Construct governor, client and engine once per process."""
    tracker = None
    if track_rate_limits:
        tracker = RateLimitTracker(sessionmaker(bind=db.get_bind(), autoflush=False))
    governor = RateGovernor(
        requests_per_minute=cfg.requests_per_minute,
        requests_per_hour=cfg.requests_per_hour,
        min_interval=cfg.min_request_interval,
        max_interval=cfg.max_request_interval,
        interval_factor=cfg.throttle_interval_factor,
        tracker=tracker,
    )
    client = CatalogClient(
        http,
        credentials or StaticTokenProvider(cfg.catalog_api_key),
        governor,
        endpoint=cfg.catalog_endpoint or endpoint_for(ENTITY),
        page_param=cfg.catalog_page_param,
        size_param=cfg.catalog_size_param,
        max_retries=cfg.catalog_max_retries,
        retry_delay=cfg.catalog_retry_delay,
        default_retry_after=cfg.catalog_default_retry_after,
    )
    return ServiceOrderSyncEngine(db, client, cfg)


async def run_sync(
    db: Session,
    options: SyncOptions | None = None,
    credentials: CredentialProvider | None = None,
    cfg: Settings = default_settings,
) -> SyncResult:
    """Open a catalog HTTP client, run one sync, and close the client."""
    http = build_http_client(cfg.catalog_base_url, timeout=cfg.catalog_timeout)
    try:
        engine = build_engine(db, http, credentials, cfg)
        return await engine.sync(options)
    finally:
        await close_client(http)


# ── Status & maintenance ──────────────────────────────────────────────


def get_sync_status(db: Session) -> dict:
    """Current state row, backlog size and per-entity metadata."""
    store = SyncStateStore(db)
    snap = store.load()
    metadata = db.query(SyncMetadata).order_by(SyncMetadata.entity_name).all()
    return {
        "current_phase": snap.current_phase,
        "status": snap.status,
        "highest_order_id": snap.highest_order_id,
        "last_order_id": snap.last_order_id,
        "total_synced": snap.total_synced,
        "total_details_synced": snap.total_details_synced,
        "last_error": snap.last_error,
        "last_sync_at": snap.last_sync_at,
        "pending_details": store.pending_queue_size(),
        "entities": [
            {
                "entity_name": m.entity_name,
                "sync_status": m.sync_status,
                "last_sync_at": m.last_sync_at,
                "records_synced": m.records_synced,
                "error_message": m.error_message,
            }
            for m in metadata
        ],
    }


def get_recent_sync_history(db: Session, limit: int = 50) -> list[dict]:
    rows = (
        db.query(SyncAuditLog)
        .order_by(SyncAuditLog.started_at.desc(), SyncAuditLog.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "entity_name": r.entity_name,
            "operation": r.operation,
            "record_count": r.record_count,
            "status": r.status,
            "error_message": r.error_message,
            "started_at": r.started_at,
            "completed_at": r.completed_at,
            "duration_seconds": r.duration_seconds,
        }
        for r in rows
    ]


def reset_sync_state(db: Session) -> None:
    """Re-initialize the sync state row (headers phase, idle, no progress)."""
    SyncStateStore(db).reset()
