"""vCard date values.

Dates without a year are stored with year 1604, the same marker Apple uses.
1604 is a leap year, so ``--02-29`` survives the round trip.
"""

from __future__ import annotations

import re
from datetime import date

from dateutil import parser as date_parser

UNKNOWN_YEAR = 1604

_NO_YEAR_V4 = re.compile(r"^--(\d{2})-(\d{2})$")
_NO_YEAR_V3 = re.compile(r"^--(\d{2})(\d{2})$")
_BASIC = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_EXTENDED = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


def _make(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_vcard_date(value: str, omit_year: bool = False) -> date | None:
    """Parse a vCard 3.0 or 4.0 date value.

    Args:
        value: ``--MM-DD``, ``--MMDD``, ``YYYYMMDD``, ``YYYY-MM-DD`` or an ISO 8601 timestamp
        omit_year: The property carried ``X-APPLE-OMIT-YEAR``

    Returns:
        The date, using ``UNKNOWN_YEAR`` when the year is absent, or None if unparseable
    """
    value = value.strip()
    if not value:
        return None

    m = _NO_YEAR_V4.match(value) or _NO_YEAR_V3.match(value)
    if m:
        return _make(UNKNOWN_YEAR, int(m.group(1)), int(m.group(2)))

    m = _BASIC.match(value) or _EXTENDED.match(value)
    if m:
        year = UNKNOWN_YEAR if omit_year else int(m.group(1))
        return _make(year, int(m.group(2)), int(m.group(3)))

    try:
        parsed = date_parser.isoparse(value)
    except ValueError:
        return None
    if omit_year:
        return _make(UNKNOWN_YEAR, parsed.month, parsed.day)
    return parsed.date()


def has_unknown_year(value: date) -> bool:
    return value.year <= UNKNOWN_YEAR


def format_vcard_date(value: date, version: str = "3.0") -> str:
    """Format a date for the given vCard version.

    Years at or before 1604 are treated as unknown and omitted.
    """
    if version == "4.0":
        if has_unknown_year(value):
            return f"--{value.month:02d}-{value.day:02d}"
        return value.isoformat()

    if has_unknown_year(value):
        return f"--{value.month:02d}{value.day:02d}"
    return f"{value.year:04d}{value.month:02d}{value.day:02d}"
