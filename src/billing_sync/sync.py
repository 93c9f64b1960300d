"""Write schedule state back onto lines and contracts.

Patch builders are pure and only include properties whose value changes, so a
line whose schedule is stable produces an empty patch and no CRM write.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any

import structlog

from billing_sync.crm.client import CRMClient
from billing_sync.crm.properties import DealProps, LineProps, ObjectType
from billing_sync.dates import add_days, add_months, format_date_iso, parse_date
from billing_sync.models import Contract, Line, first_prop, parse_bool
from billing_sync.schedule import (
    IRREGULAR,
    BillingConfig,
    ScheduleCounters,
    interval_for,
    normalize_frequency,
    reconcile_next_and_last,
)

logger = structlog.get_logger(__name__)

GENERATED_MARKER = "true"


def _int_prop(raw: str) -> int:
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return 0


def resolve_delayed_start(line: Line, contract: Contract | None, today: date) -> date | None:
    """Concrete start date for a line configured with a start delay, or None.

    The base is the line's creation date, then the contract close date, then
    today. Days take precedence over months.
    """
    if first_prop(
        line.properties,
        LineProps.START_DATE,
        LineProps.START_DATE_ALIAS,
        LineProps.START_DATE_LEGACY,
    ):
        return None
    delay_days = _int_prop(line.get(LineProps.DELAY_DAYS))
    delay_months = _int_prop(line.get(LineProps.DELAY_MONTHS))
    if delay_days <= 0 and delay_months <= 0:
        return None

    base = line.create_date or (contract.close_date if contract else None) or today
    if delay_days > 0:
        return add_days(base, delay_days)
    return add_months(base, delay_months)


async def normalize_start_delay(
    client: CRMClient,
    line: Line,
    contract: Contract | None,
    today: date,
    cooldown: float = 1.5,
    dry_run: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str | None:
    """Turn a start delay into a concrete start date on the line.

    The CRM rejects a start date while delay fields are set, so the delay is
    cleared first and the date is written after ``cooldown`` seconds. The
    in-memory line is updated to match.

    Returns:
        The new start date (``YYYY-MM-DD``), or None when nothing changed.
    """
    start = resolve_delayed_start(line, contract, today)
    if start is None:
        return None
    ymd = format_date_iso(start) or ""

    if dry_run:
        logger.info("dry_run_start_delay_normalized", line_id=line.id, start_date=ymd)
    else:
        await client.update_object(
            ObjectType.LINE_ITEMS,
            line.id,
            {LineProps.DELAY_DAYS: "", LineProps.DELAY_MONTHS: ""},
        )
        await sleep(cooldown)
        await client.update_object(ObjectType.LINE_ITEMS, line.id, {LineProps.START_DATE: ymd})
        logger.info("start_delay_normalized", line_id=line.id, start_date=ymd)

    line.properties.update(
        {
            LineProps.START_DATE: ymd,
            LineProps.DELAY_DAYS: "",
            LineProps.DELAY_MONTHS: "",
        }
    )
    return ymd


def clear_generated_slots(line: Line, today: date, max_slots: int) -> dict[str, str]:
    """Blank future slots an earlier run generated, once a line has become irregular."""
    if line.get(LineProps.SCHEDULE_GENERATED).lower() != GENERATED_MARKER:
        return {}
    patch: dict[str, str] = {LineProps.SCHEDULE_GENERATED: ""}
    for slot in range(2, max_slots + 1):
        prop = LineProps.manual_date(slot)
        slot_date = parse_date(line.get(prop))
        if slot_date is not None and slot_date >= today:
            patch[prop] = ""
    return patch


def _set_if_changed(patch: dict[str, str], props: dict[str, Any], name: str, value: str) -> None:
    current = props.get(name)
    current_text = "" if current is None else str(current).strip()
    if current_text != value:
        patch[name] = value


def _same_date(raw: Any, ymd: str) -> bool:
    return (format_date_iso(parse_date(raw)) or "") == ymd


def build_line_sync_patch(
    line: Line,
    config: BillingConfig,
    dates: list[date],
    counters: ScheduleCounters,
    *,
    max_slots: int,
    synced_at: str,
    pending: dict[str, str] | None = None,
    last_ticketed: date | None = None,
    clear_error: bool = False,
) -> dict[str, str]:
    """Properties to write back onto a line after scheduling it.

    Args:
        line: The line as read (with any in-memory normalization applied).
        config: Its resolved billing configuration.
        dates: Its full date list.
        counters: Counters of ``dates`` relative to today.
        max_slots: Number of manual date slots.
        synced_at: Timestamp recorded when anything changed.
        pending: Changes already decided for this line (e.g. cleared slots).
        last_ticketed: Latest date holding a billing ticket for this line.
        clear_error: Blank the error note (nothing was reported this run).

    Returns:
        The patch, empty when the line is already in sync.
    """
    props = line.properties
    patch: dict[str, str] = dict(pending or {})

    if config.start_date is not None:
        start_ymd = format_date_iso(config.start_date) or ""
        current_start = first_prop(
            props, LineProps.START_DATE, LineProps.START_DATE_ALIAS, LineProps.START_DATE_LEGACY
        )
        if not _same_date(current_start, start_ymd):
            patch[LineProps.START_DATE] = start_ymd

    _set_if_changed(patch, props, LineProps.TOTAL_COUNT, str(counters.total))
    _set_if_changed(patch, props, LineProps.EMITTED_COUNT, str(counters.emitted))
    _set_if_changed(patch, props, LineProps.REMAINING_COUNT, str(counters.remaining))

    next_ymd = format_date_iso(counters.next_date) or ""
    last_ymd = format_date_iso(counters.last_date) or ""
    if not _same_date(props.get(LineProps.NEXT_DATE), next_ymd):
        patch[LineProps.NEXT_DATE] = next_ymd
    if not _same_date(props.get(LineProps.LAST_DATE), last_ymd):
        patch[LineProps.LAST_DATE] = last_ymd
    if last_ticketed is not None:
        ticketed_ymd = format_date_iso(last_ticketed) or ""
        if not _same_date(props.get(LineProps.LAST_TICKETED_DATE), ticketed_ymd):
            patch[LineProps.LAST_TICKETED_DATE] = ticketed_ymd
    if clear_error and str(props.get(LineProps.ERROR) or "").strip():
        patch[LineProps.ERROR] = ""

    if not config.is_irregular:
        for slot in range(2, max_slots + 1):
            prop = LineProps.manual_date(slot)
            ymd = format_date_iso(dates[slot - 1]) if slot - 1 < len(dates) else ""
            if not _same_date(props.get(prop), ymd or ""):
                patch[prop] = ymd or ""
        _set_if_changed(patch, props, LineProps.SCHEDULE_GENERATED, GENERATED_MARKER)

    if patch:
        patch[LineProps.LAST_SYNCED_AT] = synced_at
    return patch


def frequency_label(props: dict[str, Any]) -> str:
    """Short label of a line's billing frequency for the contract summary."""
    frequency = normalize_frequency(
        first_prop(props, LineProps.FREQUENCY, LineProps.FREQUENCY_HS, LineProps.FREQUENCY_LEGACY)
    )
    if parse_bool(props.get(LineProps.IRREGULAR)) or frequency == IRREGULAR:
        return IRREGULAR
    if interval_for(frequency) is None:
        return "one_time"
    return frequency


def build_contract_summary_patch(
    contract: Contract, lines: list[Line], today: date, lost_stage: str = ""
) -> dict[str, str]:
    """Contract-level next/last billing dates and frequency summary.

    Next is the earliest upcoming date over unpaused lines; last is the latest
    past date over all lines. A persisted next date that has passed counts as
    a last date.
    """
    next_dates: list[date] = []
    last_dates: list[date] = []
    blocked = contract.is_paused or contract.is_cancelled(lost_stage)

    for line in lines:
        next_date, last_date = reconcile_next_and_last(
            parse_date(line.get(LineProps.NEXT_DATE)),
            parse_date(line.get(LineProps.LAST_DATE)),
            today,
        )
        if last_date is not None:
            last_dates.append(last_date)
        if next_date is not None and not blocked and not line.is_paused:
            next_dates.append(next_date)

    patch: dict[str, str] = {}
    next_ymd = format_date_iso(min(next_dates)) if next_dates else ""
    last_ymd = format_date_iso(max(last_dates)) if last_dates else ""
    if not _same_date(contract.properties.get(DealProps.NEXT_DATE), next_ymd or ""):
        patch[DealProps.NEXT_DATE] = next_ymd or ""
    if not _same_date(contract.properties.get(DealProps.LAST_DATE), last_ymd or ""):
        patch[DealProps.LAST_DATE] = last_ymd or ""

    summary = ", ".join(sorted({frequency_label(line.properties) for line in lines}))
    _set_if_changed(patch, contract.properties, DealProps.FREQUENCY_SUMMARY, summary)
    return patch
