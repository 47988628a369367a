"""Reporting models — derived aggregates rebuilt from item-level data."""

from datetime import datetime, timezone

from sqlalchemy import Column, Date, DateTime, Float, Integer, String

from .base import Base


class VehicleExpenseAggregate(Base):
    """Per-vehicle expense rollup. Always fully recomputed, never patched."""

    __tablename__ = "vehicle_expense_aggregates"
    plate = Column(String(10), primary_key=True)
    fleet_code = Column(String(20), index=True)
    total_expense = Column(Float, nullable=False, default=0)
    expense_count = Column(Integer, nullable=False, default=0)
    item_count = Column(Integer, nullable=False, default=0)
    first_expense_date = Column(Date)
    last_expense_date = Column(Date)
    avg_item_value = Column(Float)
    max_item_value = Column(Float)
    last_updated = Column(DateTime, default=lambda: datetime.now(timezone.utc))
