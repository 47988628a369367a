"""Database models — re-exports all models.

Import from here:  from fleetsync.models import ServiceOrder, ...
Or from submodules: from fleetsync.models.sync import SyncQueueEntry
"""

from .base import Base  # noqa: F401

# Service orders & vehicles
from .service_orders import ServiceOrder, ServiceOrderItem, Vehicle  # noqa: F401

# Sync bookkeeping
from .sync import (  # noqa: F401
    SYNC_STATE_ID,
    RateLimitRecord,
    ServiceOrderSyncState,
    SyncAuditLog,
    SyncMetadata,
    SyncQueueEntry,
)

# Reporting
from .reporting import VehicleExpenseAggregate  # noqa: F401
