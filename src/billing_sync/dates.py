"""Calendar-date helpers for billing schedules.

Billing dates are plain calendar dates (``datetime.date``); nothing here
carries a time of day or timezone, so a ``YYYY-MM-DD`` value never shifts by a
day when it crosses an API boundary. Parsing never raises: callers treat
``None`` as "no date" and degrade to an incomplete schedule instead of failing
the batch.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

YMD_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_EPOCH_MS_PATTERN = re.compile(r"^\d{10,}$")


@dataclass(frozen=True)
class Interval:
    """A billing step: whole months first, then days."""

    months: int = 0
    days: int = 0

    @property
    def is_zero(self) -> bool:
        return self.months <= 0 and self.days <= 0


def is_ymd(value: Any) -> bool:
    """Check whether a value is a ``YYYY-MM-DD`` string."""
    return isinstance(value, str) and bool(YMD_PATTERN.match(value.strip()))


def parse_date(raw: Any) -> date | None:
    """Parse a calendar date from the shapes the CRM hands back.

    Accepts ``date``/``datetime`` objects, ``YYYY-MM-DD`` strings (taken as a
    calendar date), ISO datetime strings and epoch-millisecond values.
    """
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int | float):
        return _from_epoch_ms(raw)

    text = str(raw).strip()
    if not text:
        return None

    match = YMD_PATTERN.match(text)
    if match:
        try:
            return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            return None

    if _EPOCH_MS_PATTERN.match(text):
        return _from_epoch_ms(int(text))

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.date()


def _from_epoch_ms(value: float) -> date | None:
    try:
        return datetime.fromtimestamp(value / 1000, tz=UTC).date()
    except (OverflowError, OSError, ValueError):
        return None


def format_date_iso(value: date | None) -> str | None:
    """Format a date as ``YYYY-MM-DD``."""
    if value is None:
        return None
    return value.strftime("%Y-%m-%d")


def to_ymd(raw: Any) -> str:
    """Normalize any parseable date value to ``YYYY-MM-DD`` (empty if unparseable)."""
    return format_date_iso(parse_date(raw)) or ""


def add_months(value: date, months: int) -> date:
    """Add whole months, snapping to the last day of a shorter target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(value.day, last_day))


def add_days(value: date, days: int) -> date:
    return value + timedelta(days=days)


def add_interval(value: date, interval: Interval) -> date:
    """Apply a billing interval: months first (clamped), then days."""
    result = value
    if interval.months > 0:
        result = add_months(result, interval.months)
    if interval.days > 0:
        result = add_days(result, interval.days)
    return result


def today_in(tz_name: str) -> date:
    """Current calendar date in the billing timezone."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz = UTC
    return datetime.now(tz).date()
