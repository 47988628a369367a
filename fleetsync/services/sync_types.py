"""Options and results shared by the sync phases and the orchestrator."""

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import date


class SyncMode(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    RESUME = "resume"
    DETAILS_ONLY = "details-only"


@dataclass
class SyncOptions:
    mode: SyncMode = SyncMode.INCREMENTAL
    fetch_details: bool = True
    max_records: int | None = None
    date_from: date | None = None
    date_to: date | None = None
    # Set by the caller to stop between pages / records
    stop: asyncio.Event | None = None

    def stop_requested(self) -> bool:
        return self.stop is not None and self.stop.is_set()


@dataclass
class HeaderSyncResult:
    synced: int = 0
    skipped: int = 0
    filtered: int = 0
    pages: int = 0
    highest_id: int | None = None
    stopped: bool = False


@dataclass
class DetailSyncResult:
    details_synced: int = 0
    items_synced: int = 0
    failed: int = 0
    stopped: bool = False


@dataclass
class SyncResult:
    """Outcome of one engine run, independent of how it is printed."""

    entity: str
    records_synced: int
    success: bool
    duration: float
    error: str | None = None
    details: dict = field(default_factory=dict)
