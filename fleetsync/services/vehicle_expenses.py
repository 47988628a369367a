"""Per-vehicle expense rollup, rebuilt from the item table in one statement.

The aggregate is always recomputed from source rows, so running it after
every detail batch cannot drift.
"""

from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import DateTime, distinct, func, literal, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import ServiceOrder, ServiceOrderItem, Vehicle, VehicleExpenseAggregate
from .batch_writer import dialect_insert

AGGREGATE_COLUMNS = [
    "plate",
    "fleet_code",
    "total_expense",
    "expense_count",
    "item_count",
    "first_expense_date",
    "last_expense_date",
    "avg_item_value",
    "max_item_value",
    "last_updated",
]


class VehicleExpenseUpdater:
    def __init__(self, db: Session):
        self.db = db

    def _source_query(self):
        orders = ServiceOrder.__table__
        items = ServiceOrderItem.__table__
        vehicles = Vehicle.__table__
        return (
            select(
                orders.c.plate,
                func.max(vehicles.c.fleet_code),
                func.coalesce(func.sum(items.c.line_total), 0),
                func.count(distinct(orders.c.id)),
                func.count(items.c.id),
                func.min(orders.c.opened_on),
                func.max(orders.c.opened_on),
                func.avg(items.c.line_total),
                func.max(items.c.line_total),
                literal(datetime.now(timezone.utc), DateTime),
            )
            .select_from(
                orders.join(items, items.c.order_id == orders.c.id).outerjoin(
                    vehicles, vehicles.c.plate == orders.c.plate
                )
            )
            .where(orders.c.plate.isnot(None))
            .group_by(orders.c.plate)
        )

    def recompute(self) -> int:
        """Rebuild every vehicle's aggregate row. Returns vehicles updated."""
        logger.info("Updating aggregated vehicle expenses")
        insert = dialect_insert(self.db)
        stmt = insert(VehicleExpenseAggregate.__table__).from_select(
            AGGREGATE_COLUMNS, self._source_query()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["plate"],
            set_={c: stmt.excluded[c] for c in AGGREGATE_COLUMNS if c != "plate"},
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to update vehicle expenses")
            raise

        updated = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else 0
        logger.info("Updated vehicle expenses for {} vehicle(s)", updated)
        return updated
