"""
Utility functions for the credentialing workflow engine.

Includes:
- UTC datetime helpers
- Duration helpers
- Pagination helpers
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime read back from the database to an aware UTC value.

    SQLite drops tzinfo on the way out; every timestamp the engine writes is UTC.

    Args:
        value: Naive or aware datetime, or None

    Returns:
        Aware UTC datetime, or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def duration_ms(started_at: Optional[datetime], completed_at: Optional[datetime]) -> Optional[int]:
    """Milliseconds between two timestamps, or None when either is missing."""
    start = as_utc(started_at)
    end = as_utc(completed_at)
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


def paginate(
    items: list,
    total: int,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    """
    Helper to create paginated response.

    Args:
        items: List of items for current page
        total: Total number of items across all pages
        page: Current page number (1-indexed)
        per_page: Number of items per page

    Returns:
        Dictionary with pagination metadata
    """
    total_pages = (total + per_page - 1) // per_page
    return {
        "items": items,
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def calculate_offset(page: int = 1, per_page: int = 20) -> int:
    """
    Calculate database offset from page and per_page values.

    Args:
        page: Page number (1-indexed)
        per_page: Items per page

    Returns:
        Offset for database queries
    """
    return (page - 1) * per_page
