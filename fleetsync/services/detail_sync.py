"""
detail_sync.py — Phase 2: enrich pending headers with their line items.

Business Rules:
- Pending = details_synced is false, ordered by id, capped per run
- One detail request at a time; a fixed delay separates requests and a
  longer one separates small batches (the detail endpoint throttles harder
  than the list endpoint)
- Header totals are recomputed from the items, never taken from the list
- line_total is generated by the database; only price/quantity are written
- A failing record gets sync_attempted_at + sync_error and the run moves on
- Persistence errors are not per-record failures; they abort the phase

Called by: services/sync_orchestrator.py
Depends on: connectors/catalog_client.py, services/batch_writer.py,
            services/sync_state.py
"""

import asyncio
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy.orm import Session

from ..connectors.catalog_client import CatalogClient
from ..exceptions import EmptyResponseError, SyncError
from ..models import ServiceOrder, ServiceOrderItem
from ..utils import safe_float, safe_int
from .batch_writer import BatchUpsertWriter
from .sync_state import SyncStateStore
from .sync_types import DetailSyncResult, SyncOptions

ITEM_COLUMNS = ["order_id", "item_number", "unit_price", "quantity"]
MAX_ERROR_LENGTH = 1000


def compute_totals(order_id: int, items: list[dict]) -> tuple[list[dict], float, int]:
    """Item rows for the upsert plus the header's (total_value, item_count).

    Lines repeating an item number collapse into one row; the last one wins.
    """
    rows = {}
    for raw in items:
        number = safe_int(raw.get("numeroItem"))
        if number is None:
            raise ValueError(f"Service order {order_id} has an item without numeroItem")
        price = safe_float(raw.get("valorItem")) or 0.0
        quantity = safe_float(raw.get("quantidade")) or 0.0
        rows[number] = {
            "order_id": order_id,
            "item_number": number,
            "unit_price": price,
            "quantity": quantity,
        }
    total = sum(r["unit_price"] * r["quantity"] for r in rows.values())
    return list(rows.values()), round(total, 2), len(rows)


class DetailSyncPhase:
    def __init__(
        self,
        db: Session,
        client: CatalogClient,
        writer: BatchUpsertWriter,
        state: SyncStateStore,
        batch_size: int = 5,
        batch_delay: float = 10.0,
        request_delay: float = 0.5,
        max_per_run: int = 2000,
        sleep=asyncio.sleep,
    ):
        self.db = db
        self.client = client
        self.writer = writer
        self.state = state
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.request_delay = request_delay
        self.max_per_run = max_per_run
        self._sleep = sleep

    def pending_ids(self, limit: int) -> list[int]:
        rows = (
            self.db.query(ServiceOrder.id)
            .filter(ServiceOrder.details_synced.is_(False))
            .order_by(ServiceOrder.id)
            .limit(limit)
            .all()
        )
        return [row_id for (row_id,) in rows]

    async def run(self, options: SyncOptions) -> DetailSyncResult:
        logger.info("Phase 2: syncing service order details")
        result = DetailSyncResult()

        limit = options.max_records or self.max_per_run
        pending = self.pending_ids(limit)
        logger.info("Found {} service order(s) needing detail sync", len(pending))

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            for order_id in batch:
                if options.stop_requested():
                    logger.info("Details: stop requested before order {}", order_id)
                    result.stopped = True
                    break
                try:
                    items = await self._sync_one(order_id)
                except (SyncError, ValueError, TypeError) as e:
                    self.db.rollback()
                    logger.error("Failed to sync details for order {}: {}", order_id, e)
                    self._record_failure(order_id, e)
                    result.failed += 1
                else:
                    result.details_synced += 1
                    result.items_synced += items

                if self.request_delay:
                    await self._sleep(self.request_delay)

            if result.stopped:
                break
            if self.batch_delay and start + self.batch_size < len(pending):
                await self._sleep(self.batch_delay)

        logger.info(
            "Details sync complete. Details: {}, Items: {}, Failed: {}",
            result.details_synced, result.items_synced, result.failed,
        )
        return result

    async def _sync_one(self, order_id: int) -> int:
        """Fetch and persist one order's items. Returns items written."""
        detail = await self.client.get_detail(order_id)
        if detail is None:
            raise EmptyResponseError(f"Empty detail response for order {order_id}")

        items = detail.get("itens") or []
        if not isinstance(items, list):
            raise ValueError(f"Service order {order_id} has a malformed item list")
        rows, total, count = compute_totals(order_id, items)

        written = 0
        if rows:
            written = self.writer.upsert(
                ServiceOrderItem,
                rows,
                key_columns=["order_id", "item_number"],
                columns=ITEM_COLUMNS,
            )

        order = self.db.get(ServiceOrder, order_id)
        order.total_value = total
        order.item_count = count
        order.details_synced = True
        order.sync_attempted_at = datetime.now(timezone.utc)
        order.sync_error = None
        self.db.commit()

        self.state.complete_queue_entry(order_id)
        return written

    def _record_failure(self, order_id: int, error: Exception) -> None:
        message = str(error)[:MAX_ERROR_LENGTH] or error.__class__.__name__
        order = self.db.get(ServiceOrder, order_id)
        if order is not None:
            order.sync_attempted_at = datetime.now(timezone.utc)
            order.sync_error = message
            self.db.commit()
        self.state.record_queue_attempt(order_id, message)
