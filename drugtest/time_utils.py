"""Utilities for working with collection dates, clock times and UTC timestamps."""

from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from typing import Optional, Union

DateLike = Union[date, datetime, str]

_CLOCK_RE = re.compile(
    r"^\s*(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?(?::\d{2})?\s*(?P<meridiem>[AaPp]\.?[Mm]\.?)?\s*$"
)


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(value: Optional[DateLike]) -> Optional[date]:
    """Coerce ``value`` into a calendar ``date``.

    Accepts ``date``/``datetime`` instances and ISO strings (``2025-06-07`` or
    a full timestamp).  Raises ``ValueError`` for unparseable strings so that
    callers can surface a validation error; ``None`` and blank strings map to
    ``None``.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value!r}") from exc


def parse_clock_time(text: Optional[str]) -> Optional[time]:
    """Parse wall-clock strings such as ``"11:10 AM"``, ``"9am"`` or ``"13:05"``.

    Returns ``None`` when ``text`` is empty or not a recognisable time.
    """

    if not text:
        return None
    match = _CLOCK_RE.match(str(text))
    if not match:
        return None
    hour = int(match.group("hour"))
    minute = int(match.group("minute") or 0)
    meridiem = (match.group("meridiem") or "").replace(".", "").lower()
    if meridiem:
        if hour < 1 or hour > 12:
            return None
        if meridiem == "pm" and hour != 12:
            hour += 12
        elif meridiem == "am" and hour == 12:
            hour = 0
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


__all__ = [
    "utc_now",
    "ensure_utc",
    "parse_date",
    "parse_clock_time",
]
