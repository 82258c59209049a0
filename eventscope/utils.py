"""Utility helpers for EventScope."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def ensure_aware(dt: datetime) -> datetime:
    """Return a timezone aware datetime (UTC) for arithmetic operations."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_naive_utc(dt: datetime | None) -> datetime | None:
    """Normalize a datetime to naive UTC for storage."""
    if dt is None:
        return None
    return ensure_aware(dt).replace(tzinfo=None)


def normalize_id(value: object) -> str | None:
    """Return a stripped string id, or ``None`` for empty values."""
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def id_set(values: Iterable[object] | None) -> frozenset[str]:
    """Normalize an iterable of ids into a frozenset, dropping blanks."""
    if not values:
        return frozenset()
    normalized = (normalize_id(value) for value in values)
    return frozenset(value for value in normalized if value)
