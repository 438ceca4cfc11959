"""Utility helpers for EventPass."""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import UTC, datetime

_clock_pattern = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*(AM|PM)\s*$", re.IGNORECASE)
_iso_hint = re.compile(r"^\d{4}")

VENUE_PARTS = ("name", "address", "city", "state", "zip_code")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def parse_datetime(raw: str | datetime) -> datetime:
    """Parse an ISO 8601 string (``Z`` suffix allowed) into naive UTC."""
    if isinstance(raw, datetime):
        return to_naive_utc(raw)
    cleaned = (raw or "").strip()
    if cleaned.endswith("Z"):
        cleaned = f"{cleaned[:-1]}+00:00"
    return to_naive_utc(datetime.fromisoformat(cleaned))


def parse_clock_time(raw: str) -> tuple[int, int]:
    """Return ``(hour, minute)`` for strings like ``"9:00 AM"``."""
    match = _clock_pattern.match(raw or "")
    if not match:
        raise ValueError(f'Invalid time format: {raw}. Expected format: "HH:mm AM/PM"')
    hours = int(match.group(1))
    minutes = int(match.group(2))
    period = match.group(3).upper()
    if hours > 12 or minutes > 59:
        raise ValueError(f"Invalid time format: {raw}")
    if period == "PM" and hours != 12:
        hours += 12
    elif period == "AM" and hours == 12:
        hours = 0
    return hours, minutes


def combine_date_and_clock(day: datetime, clock: str) -> datetime:
    hours, minutes = parse_clock_time(clock)
    return day.replace(hour=hours, minute=minutes, second=0, microsecond=0)


def looks_like_iso(raw: str) -> bool:
    return "T" in raw or "Z" in raw or bool(_iso_hint.match(raw))


def format_venue(venue: Mapping[str, str | None] | None) -> str | None:
    """Collapse a venue mapping into a single location line."""
    if not venue:
        return None
    full_address = (venue.get("full_address") or "").strip()
    if full_address:
        return full_address
    if not (venue.get("name") or "").strip():
        return None
    parts = [(venue.get(key) or "").strip() for key in VENUE_PARTS]
    return ", ".join(part for part in parts if part)
