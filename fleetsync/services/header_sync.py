"""
header_sync.py — Phase 1: walk the catalog pages and persist new headers.

Business Rules:
- Existing header ids are loaded once per run, before the first page
- Pages are walked in ascending order; a short page ends the walk
- incremental: only ids above the stored highest id are new work
- resume: only ids above the last processed id are new work
- Ids at or below the threshold, and ids already stored, count as skipped
- New headers are upserted, queued for details, and advance highest_order_id
- A throttled page is retried after a cooldown; any other error aborts the
  phase so no page is ever silently skipped

Called by: services/sync_orchestrator.py
Depends on: connectors/catalog_client.py, services/batch_writer.py,
            services/sync_state.py
"""

import asyncio

from loguru import logger
from sqlalchemy.orm import Session

from ..connectors.catalog_client import CatalogClient
from ..exceptions import ThrottledError
from ..models import ServiceOrder
from ..utils import safe_date, safe_float, safe_int
from .batch_writer import BatchUpsertWriter
from .sync_state import SyncSnapshot, SyncStateStore
from .sync_types import HeaderSyncResult, SyncMode, SyncOptions

HEADER_COLUMNS = [
    "id",
    "company_code",
    "unit_code",
    "opened_on",
    "plate",
    "supplier_code",
    "document_number",
    "total_value",
    "item_count",
]


def header_from_api(raw: dict) -> dict | None:
    """Map a catalog header payload to service_orders columns."""
    order_id = safe_int(raw.get("codigoOS"))
    if order_id is None:
        return None
    plate = (raw.get("placa") or "").strip() or None
    document = raw.get("numeroDocumento")
    return {
        "id": order_id,
        "company_code": safe_int(raw.get("codigoEmpresa")),
        "unit_code": safe_int(raw.get("codigoUnidade")),
        "opened_on": safe_date(raw.get("dataAbertura")),
        "plate": plate,
        "supplier_code": safe_int(raw.get("codigoFornecedor")),
        "document_number": str(document) if document is not None else None,
        "total_value": safe_float(raw.get("valorTotal")) or 0,
        "item_count": safe_int(raw.get("quantidadeItens")) or 0,
    }


def resume_threshold(options: SyncOptions, state: SyncSnapshot) -> int:
    if options.mode is SyncMode.INCREMENTAL and state.highest_order_id:
        return state.highest_order_id
    if options.mode is SyncMode.RESUME and state.last_order_id:
        return state.last_order_id
    return 0


class HeaderSyncPhase:
    def __init__(
        self,
        db: Session,
        client: CatalogClient,
        writer: BatchUpsertWriter,
        state: SyncStateStore,
        page_size: int = 1000,
        page_delay: float = 2.0,
        cooldown: float = 60.0,
        max_page_retries: int = 3,
        sleep=asyncio.sleep,
    ):
        self.db = db
        self.client = client
        self.writer = writer
        self.state = state
        self.page_size = page_size
        self.page_delay = page_delay
        self.cooldown = cooldown
        self.max_page_retries = max_page_retries
        self._sleep = sleep

    def _existing_ids(self) -> set[int]:
        return {row_id for (row_id,) in self.db.query(ServiceOrder.id)}

    async def run(self, options: SyncOptions, state: SyncSnapshot) -> HeaderSyncResult:
        logger.info("Phase 1: syncing service order headers (mode={})", options.mode.value)
        result = HeaderSyncResult()

        threshold = resume_threshold(options, state)
        if threshold:
            logger.info("Headers: only ids > {} are new", threshold)

        existing = self._existing_ids()
        logger.info("Found {} existing service orders", len(existing))

        page = 1
        throttled_attempts = 0
        while True:
            if options.max_records and result.synced >= options.max_records:
                logger.info("Headers: reached max of {} record(s)", options.max_records)
                break
            if options.stop_requested():
                logger.info("Headers: stop requested before page {}", page)
                result.stopped = True
                break

            try:
                raw_rows = await self.client.list_page(page, self.page_size)
            except ThrottledError as e:
                throttled_attempts += 1
                if throttled_attempts > self.max_page_retries:
                    raise
                wait = max(self.cooldown, e.retry_after or 0)
                logger.warning(
                    "Headers page {} throttled — pausing {}s before retry ({}/{})",
                    page, wait, throttled_attempts, self.max_page_retries,
                )
                await self._sleep(wait)
                continue
            throttled_attempts = 0
            result.pages += 1

            new_rows = []
            for raw in raw_rows:
                row = header_from_api(raw) if isinstance(raw, dict) else None
                if row is None:
                    logger.warning("Headers page {}: dropping record without id", page)
                    continue
                if threshold and row["id"] <= threshold:
                    result.skipped += 1
                    continue
                if not self._within_dates(row, options):
                    result.filtered += 1
                    continue
                if row["id"] in existing:
                    result.skipped += 1
                    continue
                new_rows.append(row)

            if options.max_records:
                new_rows = new_rows[: options.max_records - result.synced]

            if new_rows:
                ids = [r["id"] for r in new_rows]
                result.synced += self.writer.upsert(
                    ServiceOrder, new_rows, key_columns=["id"], columns=HEADER_COLUMNS
                )
                existing.update(ids)
                self.state.enqueue(ids)
                result.highest_id = self.state.advance_highest(max(ids))

            logger.debug(
                "Headers page {}: {} fetched, {} new, {} total synced",
                page, len(raw_rows), len(new_rows), result.synced,
            )

            if len(raw_rows) < self.page_size:
                break
            page += 1
            if self.page_delay:
                await self._sleep(self.page_delay)

        logger.info(
            "Headers sync complete. New: {}, Skipped: {}, Pages: {}",
            result.synced, result.skipped, result.pages,
        )
        return result

    @staticmethod
    def _within_dates(row: dict, options: SyncOptions) -> bool:
        opened = row["opened_on"]
        if opened is None:
            return True
        if options.date_from and opened < options.date_from:
            return False
        if options.date_to and opened > options.date_to:
            return False
        return True
