"""Billing period helpers.  A period is a calendar month in UTC, written ``YYYY-MM``."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime

from metering_core.errors import ValidationError

_PERIOD_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def parse_period(period: str) -> tuple[datetime, datetime]:
    """Return the half-open UTC window ``[start, end)`` covered by *period*."""
    match = _PERIOD_RE.match(period or "")
    if match is None:
        raise ValidationError(f"Invalid period {period!r}; expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    start = datetime(year, month, 1, tzinfo=UTC)
    end = datetime(year + 1, 1, 1, tzinfo=UTC) if month == 12 else datetime(year, month + 1, 1, tzinfo=UTC)
    return start, end


def period_of(ts: datetime) -> str:
    """The period containing *ts*."""
    return ts.astimezone(UTC).strftime("%Y-%m")


def period_dates(period: str) -> tuple[date, date]:
    """Like :func:`parse_period` but as calendar days ``[first, first_of_next)``."""
    start, end = parse_period(period)
    return start.date(), end.date()


def compact(period: str) -> str:
    """``2024-03`` -> ``202403``."""
    parse_period(period)
    return period.replace("-", "")
