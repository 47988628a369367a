"""Shared conversion helpers for remote catalog payloads."""

from datetime import date, datetime


def safe_int(v):
    """Safely convert a value to int, returning None on failure."""
    if v is None:
        return None
    try:
        return int(v)
    except (ValueError, TypeError):
        return None


def safe_float(v):
    """Safely convert a value to float, returning None on failure."""
    if v is None:
        return None
    try:
        return float(v)
    except (ValueError, TypeError):
        return None


def safe_date(v) -> date | None:
    """Parse an ISO date or datetime string to a date. None on failure."""
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    try:
        return datetime.fromisoformat(str(v).replace("Z", "+00:00")).date()
    except ValueError:
        pass
    try:
        return date.fromisoformat(str(v)[:10])
    except ValueError:
        return None
