"""
Shared utility functions.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def safe_error_detail(exc: Exception, fallback: str = "An internal error occurred. Please try again later.") -> str:
    """
    Return a sanitized error message safe for client consumption.
    Logs the real exception detail server-side.
    """
    logger.error(f"Operation failed: {exc}", exc_info=True)
    return fallback


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO timestamp stored in a JSON blob back to a naive UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def error_entry(message: str, phase: Optional[int] = None, kind: Optional[str] = None) -> dict:
    """Structured entry for the api_errors list on sync / media logs."""
    entry = {"timestamp": utcnow().isoformat(), "message": message}
    if phase is not None:
        entry["phase"] = phase
    if kind:
        entry["kind"] = kind
    return entry


def to_float(value, default: float = 0.0) -> float:
    """Graph API sends numbers as strings; tolerate None and junk."""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_int(value, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def duration_ms(started_at: Optional[datetime], ended_at: datetime) -> Optional[int]:
    if started_at is None:
        return None
    return int((ended_at - started_at).total_seconds() * 1000)
