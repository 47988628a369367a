"""Service order models — headers, line items and the vehicles they reference."""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Computed,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import Base


class ServiceOrder(Base):
    """Service order header. Primary key is the remote catalog identifier."""

    __tablename__ = "service_orders"
    id = Column(Integer, primary_key=True, autoincrement=False)
    company_code = Column(Integer)
    unit_code = Column(Integer)
    opened_on = Column(Date)
    plate = Column(String(10), index=True)
    supplier_code = Column(Integer, index=True)
    document_number = Column(String(50))

    # Recomputed from items by the detail phase
    total_value = Column(Float, default=0)
    item_count = Column(Integer, default=0)

    details_synced = Column(Boolean, nullable=False, default=False)
    sync_attempted_at = Column(DateTime)
    sync_error = Column(Text)

    synced_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    items = relationship(
        "ServiceOrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ServiceOrderItem.item_number",
    )

    __table_args__ = (
        Index("ix_so_details_pending", "details_synced", "id"),
        Index("ix_so_opened_on", "opened_on", "id"),
        Index("ix_so_company_unit", "company_code", "unit_code"),
    )


class ServiceOrderItem(Base):
    """Priced line entry of a service order.

    line_total is generated by the database and is never written directly.
    """

    __tablename__ = "service_order_items"
    id = Column(Integer, primary_key=True)
    order_id = Column(
        Integer,
        ForeignKey("service_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_number = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False, default=0)
    quantity = Column(Float, nullable=False, default=0)
    line_total = Column(Float, Computed("unit_price * quantity", persisted=True))
    synced_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    order = relationship("ServiceOrder", back_populates="items")

    __table_args__ = (
        UniqueConstraint("order_id", "item_number", name="uq_so_item"),
    )


class Vehicle(Base):
    """Fleet vehicle, keyed by plate. Filled by the vehicle catalog sync."""

    __tablename__ = "vehicles"
    plate = Column(String(10), primary_key=True)
    fleet_code = Column(String(20), index=True)
    description = Column(String(255))
    synced_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
