"""Schedule calculator: line configuration to billing dates and counters.

Every function here is pure apart from logging. "Today" is always passed in so
that a run is reproducible for a given date.
"""

import re
from dataclasses import dataclass
from datetime import date
from typing import Any

import structlog

from billing_sync.crm.properties import LineProps
from billing_sync.dates import Interval, add_interval, parse_date
from billing_sync.models import first_prop, parse_bool, prop_text

logger = structlog.get_logger(__name__)

IRREGULAR = "irregular"

FREQUENCY_INTERVALS: dict[str, Interval] = {
    "weekly": Interval(days=7),
    "biweekly": Interval(days=14),
    "monthly": Interval(months=1),
    "quarterly": Interval(months=3),
    "per_six_months": Interval(months=6),
    "semiannual": Interval(months=6),
    "semiannually": Interval(months=6),
    "annually": Interval(months=12),
    "annual": Interval(months=12),
    "yearly": Interval(months=12),
    "per_two_years": Interval(months=24),
    "per_three_years": Interval(months=36),
    "per_four_years": Interval(months=48),
    "per_five_years": Interval(months=60),
    # Legacy values of the custom frequency field
    "semanal": Interval(days=7),
    "quincenal": Interval(days=14),
    "mensual": Interval(months=1),
    "bimestral": Interval(months=2),
    "trimestral": Interval(months=3),
    "semestral": Interval(months=6),
    "anual": Interval(months=12),
}

_EVERY_N_YEARS = re.compile(r"^every_(\d+)_years?$")


def normalize_frequency(raw: Any) -> str:
    """Lower-case a frequency value and collapse separators to underscores."""
    text = str(raw or "").strip().lower()
    return re.sub(r"[\s\-]+", "_", text)


def interval_for(frequency: str) -> Interval | None:
    """Look up the billing interval of a normalized frequency (None = one-time)."""
    if not frequency:
        return None
    if frequency in FREQUENCY_INTERVALS:
        return FREQUENCY_INTERVALS[frequency]
    match = _EVERY_N_YEARS.match(frequency)
    if match and int(match.group(1)) > 0:
        return Interval(months=12 * int(match.group(1)))
    return None


@dataclass(frozen=True)
class BillingConfig:
    """Resolved recurring-billing configuration of one line."""

    is_irregular: bool
    frequency: str
    interval: Interval | None
    start_date: date | None
    start_defaulted: bool
    max_occurrences: int
    fixed_occurrences: int | None

    @property
    def is_recurring(self) -> bool:
        return not self.is_irregular and self.interval is not None

    @property
    def is_one_time(self) -> bool:
        return not self.is_irregular and self.interval is None


@dataclass(frozen=True)
class ScheduleCounters:
    """Counters of a date list relative to today."""

    total: int
    emitted: int
    remaining: int
    next_date: date | None
    last_date: date | None


def _positive_int(raw: str) -> int | None:
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def resolve_billing_config(
    props: dict[str, Any],
    today: date,
    *,
    max_occurrences: int,
    default_start_to_today: bool = True,
    line_id: str | None = None,
) -> BillingConfig:
    """Resolve a line's billing configuration. Never raises.

    Args:
        props: Raw line item properties.
        today: Run date in the billing timezone.
        max_occurrences: Ceiling for open-ended schedules.
        default_start_to_today: Use today when no start date is set.
        line_id: Line id for log context only.

    Returns:
        The resolved configuration.
    """
    frequency = normalize_frequency(
        first_prop(
            props,
            LineProps.FREQUENCY,
            LineProps.FREQUENCY_HS,
            LineProps.FREQUENCY_LEGACY,
        )
    )
    is_irregular = parse_bool(props.get(LineProps.IRREGULAR)) or frequency == IRREGULAR
    interval = None if is_irregular else interval_for(frequency)
    if frequency and not is_irregular and interval is None:
        logger.warning("unknown_frequency", line_id=line_id, frequency=frequency)

    raw_start = first_prop(
        props,
        LineProps.START_DATE,
        LineProps.START_DATE_ALIAS,
        LineProps.START_DATE_LEGACY,
    )
    start_date = parse_date(raw_start)
    start_defaulted = False
    if start_date is None:
        if raw_start:
            logger.warning("unparseable_start_date", line_id=line_id, value=raw_start)
        if default_start_to_today:
            start_date = today
            start_defaulted = True
            logger.warning("start_date_defaulted_to_today", line_id=line_id, today=today.isoformat())

    fixed = _positive_int(
        first_prop(props, LineProps.NUMBER_OF_PAYMENTS, LineProps.NUMBER_OF_PAYMENTS_LEGACY)
    )

    return BillingConfig(
        is_irregular=is_irregular,
        frequency=IRREGULAR if is_irregular else frequency,
        interval=interval,
        start_date=start_date,
        start_defaulted=start_defaulted,
        max_occurrences=fixed or max_occurrences,
        fixed_occurrences=fixed,
    )


def generate_dates(start: date, interval: Interval, count: int) -> list[date]:
    """Step ``interval`` from ``start`` until ``count`` dates or the date stops advancing."""
    if count <= 0:
        return []
    dates = [start]
    current = start
    while len(dates) < count:
        following = add_interval(current, interval)
        if following <= current:
            break
        dates.append(following)
        current = following
    return dates


def manual_dates(props: dict[str, Any], max_slots: int) -> list[date]:
    """User-entered dates from the manual slots ``billing_date_2..max_slots``."""
    dates: list[date] = []
    for slot in range(2, max_slots + 1):
        parsed = parse_date(prop_text(props, LineProps.manual_date(slot)))
        if parsed is not None:
            dates.append(parsed)
    return dates


def materialize_dates(config: BillingConfig, props: dict[str, Any], max_slots: int) -> list[date]:
    """Full date list of a line.

    Regular lines are generated from the start date; irregular lines are the
    start date plus their manual slots, never regenerated.
    """
    if config.start_date is None:
        return []
    if config.is_irregular:
        return sorted({config.start_date, *manual_dates(props, max_slots)})
    if config.interval is None:
        return [config.start_date]
    return generate_dates(config.start_date, config.interval, config.max_occurrences)


def forecast_dates(
    config: BillingConfig,
    props: dict[str, Any],
    *,
    ceiling: int,
    max_slots: int,
) -> list[date]:
    """Dates a forecast covers: one-time 1, fixed term the term, else ``ceiling``."""
    if config.start_date is None:
        return []
    if config.is_irregular:
        return materialize_dates(config, props, max_slots)
    if config.interval is None:
        return [config.start_date]
    count = config.fixed_occurrences or ceiling
    return generate_dates(config.start_date, config.interval, count)


def compute_counters(
    dates: list[date],
    today: date,
    max_slots: int = 48,
    *,
    last_ticketed: date | None = None,
    one_time: bool = False,
) -> ScheduleCounters:
    """Count emitted/remaining periods and find the next and last billing dates.

    The next date is the first date on or after today that is later than
    ``last_ticketed``; dates already holding a billing ticket are not "next".
    A one-time line has no next date once it has been ticketed.
    """
    unique = sorted(set(dates))[:max_slots]
    past = [d for d in unique if d < today]
    upcoming = [d for d in unique if d >= today]
    pending = upcoming
    if last_ticketed is not None:
        pending = [] if one_time else [d for d in upcoming if d > last_ticketed]
    return ScheduleCounters(
        total=len(unique),
        emitted=len(past),
        remaining=len(upcoming),
        next_date=pending[0] if pending else None,
        last_date=past[-1] if past else None,
    )


def reconcile_next_and_last(
    next_date: date | None, last_date: date | None, today: date
) -> tuple[date | None, date | None]:
    """Move a persisted next date that has already passed into the last date."""
    if next_date is not None and next_date < today:
        if last_date is None or next_date > last_date:
            last_date = next_date
        next_date = None
    return next_date, last_date
