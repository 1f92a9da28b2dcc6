"""Shared utility functions used across services and blueprints.

utcnow:           single clock for services (monkeypatched in tests)
parse_datetime:   ISO date / datetime → aware UTC datetime (None on bad input)
as_utc:           normalise naive datetimes read back from SQLite
paginate_query:   page/limit pagination with a uniform envelope
chunked:          fixed-size batches for bulk operations
"""
import math
from datetime import date, datetime, timezone
from typing import Any, Iterable, Iterator

MAX_PAGE_SIZE = 200


def utcnow() -> datetime:
    """Return current UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes; SQLite drops tzinfo on round-trip."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value) -> datetime | None:
    """Parse an ISO date or datetime string to an aware UTC datetime.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (midnight UTC)
    - YYYY-MM-DDTHH:MM:SS[+offset] (naive values are taken as UTC)
    - trailing ``Z`` designator
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        return None


def paginate_query(query: Any, page: int = 1, limit: int = 20) -> dict:
    """Apply page/limit pagination to a SQLAlchemy query.

    Args:
        query: SQLAlchemy query object (already ordered).
        page: 1-based page number.
        limit: Items per page (capped at MAX_PAGE_SIZE).

    Returns:
        Dict with ``items`` (model instances), ``total``, ``page``,
        ``limit`` and ``total_pages``.
    """
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 20), 1), MAX_PAGE_SIZE)
    total = query.count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


def chunked(items: Iterable, size: int) -> Iterator[list]:
    """Yield consecutive lists of at most ``size`` items, preserving order."""
    batch: list = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
