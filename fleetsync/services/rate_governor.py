"""
rate_governor.py — Request budget for the remote catalog.

Tracks requests in rolling per-minute and per-hour windows, enforces a
minimum spacing between requests, and remembers per-endpoint cooldowns
learned from 429 responses. Every remote call awaits wait() first.

Business Rules:
- Minute/hour counters reset when their window elapses
- An exhausted budget sleeps for the rest of the window
- Spacing starts at min_interval and only ever grows: each throttle adds
  interval_factor × wait, capped at max_interval
- Calls are serialized by the engine's sequential flow, not by this class
- The tracker (database) is observational; its failures never relax limits

Called by: connectors/catalog_client.py
Depends on: models.RateLimitRecord (via RateLimitTracker)
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy.orm import Session

from ..models import RateLimitRecord

MINUTE = 60.0
HOUR = 3600.0


class RateGovernor:
    def __init__(
        self,
        requests_per_minute: int = 20,
        requests_per_hour: int = 600,
        min_interval: float = 0.1,
        max_interval: float = 1.0,
        interval_factor: float = 0.1,
        clock=time.monotonic,
        sleep=asyncio.sleep,
        tracker: "RateLimitTracker | None" = None,
    ):
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.interval_factor = interval_factor
        self._clock = clock
        self._sleep = sleep
        self._tracker = tracker

        now = clock()
        self._minute_start = now
        self._hour_start = now
        self._minute_count = 0
        self._hour_count = 0
        self._last_request: float | None = None
        self._cooldowns: dict[str, float] = {}

    @property
    def minute_count(self) -> int:
        return self._minute_count

    @property
    def hour_count(self) -> int:
        return self._hour_count

    def cooldown_remaining(self, endpoint: str) -> float:
        until = self._cooldowns.get(endpoint)
        if until is None:
            return 0.0
        return max(0.0, until - self._clock())

    async def wait(self, endpoint: str) -> None:
        """Block until a request to endpoint is permitted, then count it."""
        remaining = self.cooldown_remaining(endpoint)
        if remaining > 0:
            logger.info("Rate limit: {} cooling down for {:.1f}s", endpoint, remaining)
            await self._sleep(remaining)
        self._cooldowns.pop(endpoint, None)

        now = self._clock()
        if now - self._minute_start >= MINUTE:
            self._minute_count = 0
            self._minute_start = now
        if now - self._hour_start >= HOUR:
            self._hour_count = 0
            self._hour_start = now

        if self._minute_count >= self.requests_per_minute:
            wait = MINUTE - (now - self._minute_start)
            if wait > 0:
                logger.info("Rate limit: waiting {:.1f}s for minute limit", wait)
                await self._sleep(wait)
            self._minute_count = 0
            self._minute_start = self._clock()

        if self._hour_count >= self.requests_per_hour:
            wait = HOUR - (self._clock() - self._hour_start)
            if wait > 0:
                logger.info("Rate limit: waiting {:.1f}m for hour limit", wait / 60)
                await self._sleep(wait)
            self._hour_count = 0
            self._hour_start = self._clock()

        if self._last_request is not None:
            since = self._clock() - self._last_request
            if since < self.min_interval:
                await self._sleep(self.min_interval - since)

        self._last_request = self._clock()
        self._minute_count += 1
        self._hour_count += 1

        if self._tracker:
            self._tracker.record_request(endpoint, self._minute_count)

    def record_throttled(self, endpoint: str, retry_after: float) -> None:
        """Remember a 429 for endpoint and permanently widen the spacing."""
        self._cooldowns[endpoint] = self._clock() + retry_after
        increase = min(retry_after * self.interval_factor, self.max_interval)
        self.min_interval = min(self.min_interval + increase, self.max_interval)
        logger.warning(
            "Endpoint {} rate limited for {:.1f}s; min interval now {:.2f}s",
            endpoint, retry_after, self.min_interval,
        )
        if self._tracker:
            self._tracker.record_limited(endpoint, retry_after)


class RateLimitTracker:
    """Persists RateLimitRecord rows for monitoring.

    Write failures are logged and rolled back. The in-memory governor state
    stays authoritative, so a broken tracker never lets extra requests through.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def record_request(self, endpoint: str, request_count: int) -> None:
        now = datetime.now(timezone.utc)

        def apply(rec: RateLimitRecord):
            rec.last_request_at = now
            rec.request_count = request_count
            if rec.is_limited and rec.reset_at and _aware(rec.reset_at) <= now:
                rec.is_limited = False
                rec.reset_at = None

        self._write(endpoint, apply)

    def record_limited(self, endpoint: str, retry_after: float) -> None:
        now = datetime.now(timezone.utc)

        def apply(rec: RateLimitRecord):
            rec.last_request_at = now
            rec.is_limited = True
            rec.reset_at = now + timedelta(seconds=retry_after)

        self._write(endpoint, apply)

    def _write(self, endpoint: str, apply) -> None:
        db = self._session_factory()
        try:
            rec = db.get(RateLimitRecord, endpoint)
            if rec is None:
                rec = RateLimitRecord(endpoint=endpoint, request_count=0, is_limited=False)
                db.add(rec)
            apply(rec)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Rate limit tracking failed for {}: {}", endpoint, e)
        finally:
            db.close()


def rate_limit_status(db: Session, busy_threshold: int = 50, limit: int = 10) -> list[dict]:
    """Endpoints currently limited or busy, most recently touched first."""
    rows = (
        db.query(RateLimitRecord)
        .filter(
            (RateLimitRecord.is_limited.is_(True))
            | (RateLimitRecord.request_count > busy_threshold)
        )
        .order_by(RateLimitRecord.updated_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "endpoint": r.endpoint,
            "last_request_at": r.last_request_at,
            "request_count": r.request_count,
            "is_limited": r.is_limited,
            "reset_at": r.reset_at,
        }
        for r in rows
    ]


def _aware(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt
