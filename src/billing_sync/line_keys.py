"""Clone-resistant line identity keys.

A line key has the shape ``<contractId>:<lineRecordId>:<6 hex chars>``. When a
line is cloned (same deal duplicated, or a line copied across deals) the CRM
copies the key along with every other property; the embedded owner then no
longer matches the record holding it, which is how clones are detected.
"""

import secrets
from dataclasses import dataclass
from typing import Any

import structlog

from billing_sync.crm.properties import LineProps
from billing_sync.models import Line

logger = structlog.get_logger(__name__)

# Per-line state copied by a clone that must not carry over to the new record
OPERATIVE_PROPS_TO_RESET = (
    LineProps.NEXT_DATE,
    LineProps.LAST_DATE,
    LineProps.LAST_BILLING_PERIOD,
    LineProps.LAST_TICKETED_DATE,
    LineProps.ERROR,
    LineProps.INVOICE_ID,
    LineProps.INVOICE_KEY,
    LineProps.OF_INVOICE_ID,
    LineProps.OF_INVOICE_KEY,
    LineProps.OF_TICKET_ID,
    LineProps.OF_TICKET_KEY,
    LineProps.FORECAST_LAST_GENERATED_AT,
    LineProps.LAST_SYNCED_AT,
)


@dataclass(frozen=True)
class LineKeyOwner:
    contract_id: str
    record_id: str


@dataclass(frozen=True)
class LineKeyDecision:
    """What to do with a line's identity key."""

    key: str
    should_update: bool
    clone_detected: bool = False


def random_suffix() -> str:
    return secrets.token_hex(3)


def build_line_key(contract_id: Any, record_id: Any, suffix: str | None = None) -> str:
    """Issue a new line key.

    Raises:
        ValueError: If the contract or record id is empty.
    """
    contract = str(contract_id or "").strip()
    record = str(record_id or "").strip()
    if not contract:
        raise ValueError("contract id is required")
    if not record:
        raise ValueError("line record id is required")
    return f"{contract}:{record}:{suffix or random_suffix()}"


def parse_line_key(raw: Any) -> LineKeyOwner | None:
    """Extract the owning contract and record ids, or None if unparsable."""
    parts = str(raw or "").strip().split(":")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    return LineKeyOwner(contract_id=parts[0], record_id=parts[1])


def is_clone(contract_id: str, line: Line) -> bool:
    """True when the line carries a key issued for a different contract or record."""
    owner = parse_line_key(line.line_key)
    if owner is None:
        return False
    return owner.contract_id != str(contract_id) or owner.record_id != line.id


def ensure_line_key(contract_id: str, line: Line, force_new: bool = False) -> LineKeyDecision:
    """Decide whether a line needs a new identity key.

    An unparsable existing key is kept as is; only a key whose embedded owner
    mismatches (a clone) or an explicit ``force_new`` leads to a re-key.
    """
    current = line.line_key
    clone_detected = bool(current) and is_clone(contract_id, line)

    if force_new or clone_detected:
        key = build_line_key(contract_id, line.id)
        logger.info(
            "line_key_reissued",
            line_id=line.id,
            contract_id=contract_id,
            previous_key=current or None,
            clone_detected=clone_detected,
        )
        return LineKeyDecision(key=key, should_update=True, clone_detected=clone_detected)

    if current:
        return LineKeyDecision(key=current, should_update=False)

    return LineKeyDecision(key=build_line_key(contract_id, line.id), should_update=True)


def sanitize_cloned_line(line: Line) -> dict[str, str]:
    """Patch blanking the operative properties a clone inherited (only those set)."""
    return {prop: "" for prop in OPERATIVE_PROPS_TO_RESET if line.get(prop)}
