"""
test_rate_governor.py — Tests for services/rate_governor.py

Covers: per-minute and per-hour budgets, minimum spacing and its growth
after throttling, per-endpoint cooldowns, and the database tracker.
All waiting happens on FakeClock, so no test actually sleeps.

Called by: pytest
Depends on: services/rate_governor.py, conftest.FakeClock
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from fleetsync.models import RateLimitRecord
from fleetsync.services.rate_governor import RateGovernor, RateLimitTracker, rate_limit_status


def _governor(clock, **kwargs) -> RateGovernor:
    kwargs.setdefault("min_interval", 0)
    return RateGovernor(clock=clock, sleep=clock.sleep, **kwargs)


# ── Budgets ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_minute_budget_blocks_until_window_resets(clock):
    gov = _governor(clock, requests_per_minute=3)
    start = clock.now
    for _ in range(3):
        await gov.wait("/os")
    assert clock.sleeps == []

    await gov.wait("/os")
    assert clock.sleeps == [pytest.approx(60.0)]
    assert clock.now - start >= 60
    assert gov.minute_count == 1


@pytest.mark.asyncio
async def test_minute_budget_waits_only_for_remainder(clock):
    """With spacing on, the fourth call waits for what is left of the minute."""
    gov = _governor(clock, requests_per_minute=3, min_interval=0.1)
    for _ in range(4):
        await gov.wait("/os")
    assert clock.sleeps == [
        pytest.approx(0.1),
        pytest.approx(0.1),
        pytest.approx(59.8),
    ]


@pytest.mark.asyncio
async def test_minute_window_resets_after_elapsed(clock):
    gov = _governor(clock, requests_per_minute=2)
    await gov.wait("/os")
    await gov.wait("/os")
    clock.advance(61)
    await gov.wait("/os")
    assert clock.sleeps == []
    assert gov.minute_count == 1


@pytest.mark.asyncio
async def test_hour_budget_blocks(clock):
    gov = _governor(clock, requests_per_minute=100, requests_per_hour=2)
    await gov.wait("/os")
    await gov.wait("/os")
    await gov.wait("/os")
    assert clock.sleeps == [pytest.approx(3600.0)]
    assert gov.hour_count == 1


# ── Spacing ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_first_request_never_waits(clock):
    gov = _governor(clock, min_interval=0.5)
    await gov.wait("/os")
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_spacing_between_requests(clock):
    gov = _governor(clock, min_interval=0.5)
    await gov.wait("/os")
    clock.advance(0.2)
    await gov.wait("/os")
    assert clock.sleeps == [pytest.approx(0.3)]


def test_throttle_grows_interval_and_caps(clock):
    gov = _governor(clock, min_interval=0.1, max_interval=1.0, interval_factor=0.1)
    gov.record_throttled("/os", 5)
    assert gov.min_interval == pytest.approx(0.6)
    gov.record_throttled("/os", 5)
    assert gov.min_interval == pytest.approx(1.0)
    gov.record_throttled("/os", 60)
    assert gov.min_interval == pytest.approx(1.0)


def test_throttle_increase_is_capped_per_event(clock):
    """A huge Retry-After adds at most max_interval in one step."""
    gov = _governor(clock, min_interval=0.1, max_interval=1.0, interval_factor=0.1)
    gov.record_throttled("/os", 1000)
    assert gov.min_interval == pytest.approx(1.0)


def test_interval_never_decreases(clock):
    gov = _governor(clock, min_interval=0.1, max_interval=1.0, interval_factor=0.1)
    seen = [gov.min_interval]
    for retry_after in (2, 0, 1, 0.5, 30):
        gov.record_throttled("/os", retry_after)
        seen.append(gov.min_interval)
    assert seen == sorted(seen)


# ── Cooldowns ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cooldown_delays_next_request(clock):
    gov = _governor(clock)
    gov.record_throttled("/os", 30)
    assert gov.cooldown_remaining("/os") == pytest.approx(30)

    await gov.wait("/os")
    assert clock.sleeps[0] == pytest.approx(30)
    assert gov.cooldown_remaining("/os") == 0


@pytest.mark.asyncio
async def test_cooldown_is_per_endpoint(clock):
    gov = _governor(clock, max_interval=0)
    gov.record_throttled("/os", 30)
    await gov.wait("/veiculos")
    assert clock.sleeps == []
    assert gov.cooldown_remaining("/os") == pytest.approx(30)


@pytest.mark.asyncio
async def test_elapsed_cooldown_does_not_sleep(clock):
    gov = _governor(clock, max_interval=0)
    gov.record_throttled("/os", 10)
    clock.advance(15)
    await gov.wait("/os")
    assert clock.sleeps == []


# ── Tracker ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_tracker_records_requests(clock, db_session, session_factory):
    gov = _governor(clock, tracker=RateLimitTracker(session_factory))
    await gov.wait("/os")
    await gov.wait("/os")

    rec = db_session.get(RateLimitRecord, "/os")
    assert rec is not None
    assert rec.request_count == 2
    assert rec.is_limited is False
    assert rec.last_request_at is not None


def test_tracker_records_limited(clock, db_session, session_factory):
    gov = _governor(clock, tracker=RateLimitTracker(session_factory))
    gov.record_throttled("/os", 45)

    rec = db_session.get(RateLimitRecord, "/os")
    assert rec.is_limited is True
    assert rec.reset_at is not None

    status = rate_limit_status(db_session)
    assert [s["endpoint"] for s in status] == ["/os"]


@pytest.mark.asyncio
async def test_tracker_failure_does_not_relax_limits(clock):
    """A broken tracker is logged; the in-memory budget still applies."""
    broken = MagicMock()
    broken.get.side_effect = OperationalError("SELECT", {}, Exception("db down"))
    tracker = RateLimitTracker(lambda: broken)
    gov = _governor(clock, requests_per_minute=1, tracker=tracker)

    await gov.wait("/os")
    await gov.wait("/os")

    assert clock.sleeps == [pytest.approx(60.0)]
    assert broken.rollback.call_count == 2
    assert broken.close.call_count == 2


def test_rate_limit_status_ignores_quiet_endpoints(db_session):
    db_session.add(RateLimitRecord(endpoint="/os", request_count=3, is_limited=False))
    db_session.add(RateLimitRecord(endpoint="/os/1", request_count=80, is_limited=False))
    db_session.commit()

    status = rate_limit_status(db_session, busy_threshold=50)
    assert [s["endpoint"] for s in status] == ["/os/1"]
