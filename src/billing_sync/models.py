"""Contract, line item and ticket records as read from the CRM."""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from billing_sync.crm.properties import DealProps, LineProps, TicketProps
from billing_sync.dates import parse_date

TRUTHY_VALUES = frozenset({"true", "1", "yes", "si", "sí", "y", "on"})


def parse_bool(raw: Any) -> bool:
    """Interpret a CRM checkbox/flag value (true/1/yes/si/sí)."""
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return False
    return str(raw).strip().lower() in TRUTHY_VALUES


def prop_text(properties: dict[str, Any], name: str) -> str:
    """Read a property as stripped text; absent or null reads as empty."""
    value = properties.get(name)
    if value is None:
        return ""
    text = str(value).strip()
    if text.lower() in ("null", "undefined"):
        return ""
    return text


def first_prop(properties: dict[str, Any], *names: str) -> str:
    """First non-empty value among several property names."""
    for name in names:
        value = prop_text(properties, name)
        if value:
            return value
    return ""


def _parse_timestamp(raw: Any) -> datetime | None:
    text = str(raw or "").strip()
    if not text:
        return None
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=UTC)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@dataclass
class Contract:
    """A CRM deal carrying the billing agreement."""

    id: str
    properties: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Contract":
        return cls(id=str(record["id"]), properties=dict(record.get("properties") or {}))

    def get(self, name: str) -> str:
        return prop_text(self.properties, name)

    @property
    def name(self) -> str:
        return self.get(DealProps.NAME)

    @property
    def stage(self) -> str:
        return self.get(DealProps.STAGE)

    @property
    def currency(self) -> str:
        return self.get(DealProps.CURRENCY)

    @property
    def close_date(self) -> date | None:
        return parse_date(self.get(DealProps.CLOSE_DATE))

    @property
    def billing_active(self) -> bool:
        return parse_bool(self.properties.get(DealProps.BILLING_ACTIVE))

    @property
    def is_paused(self) -> bool:
        return parse_bool(self.properties.get(DealProps.BILLING_PAUSED))

    @property
    def is_mirror(self) -> bool:
        return parse_bool(self.properties.get(DealProps.IS_MIRROR))

    def is_cancelled(self, lost_stage: str) -> bool:
        """Cancelled when the deal sits in the lost stage or is flagged cancelled."""
        if lost_stage and self.stage == lost_stage:
            return True
        return parse_bool(self.properties.get(DealProps.BILLING_CANCELLED))


@dataclass
class Line:
    """A billable line item within a contract."""

    id: str
    properties: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Line":
        return cls(id=str(record["id"]), properties=dict(record.get("properties") or {}))

    def get(self, name: str) -> str:
        return prop_text(self.properties, name)

    @property
    def name(self) -> str:
        return self.get(LineProps.NAME) or f"line {self.id}"

    @property
    def line_key(self) -> str:
        return self.get(LineProps.LINE_KEY)

    @property
    def is_paused(self) -> bool:
        return parse_bool(self.properties.get(LineProps.PAUSED))

    @property
    def is_automated(self) -> bool:
        return parse_bool(self.properties.get(LineProps.AUTOMATED))

    @property
    def create_date(self) -> date | None:
        return parse_date(first_prop(self.properties, LineProps.CREATE_DATE, LineProps.HS_CREATE_DATE))


@dataclass
class Ticket:
    """A billing or forecast ticket associated with a contract."""

    id: str
    properties: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Ticket":
        return cls(id=str(record["id"]), properties=dict(record.get("properties") or {}))

    def get(self, name: str) -> str:
        return prop_text(self.properties, name)

    @property
    def key(self) -> str:
        return self.get(TicketProps.TICKET_KEY)

    @property
    def line_key(self) -> str:
        return self.get(TicketProps.LINE_KEY)

    @property
    def deal_id(self) -> str:
        return self.get(TicketProps.DEAL_ID)

    @property
    def expected_date(self) -> date | None:
        return parse_date(self.get(TicketProps.EXPECTED_DATE))

    @property
    def pipeline(self) -> str:
        return self.get(TicketProps.PIPELINE)

    @property
    def stage(self) -> str:
        return self.get(TicketProps.STAGE)

    @property
    def invoice_id(self) -> str:
        return self.get(TicketProps.INVOICE_ID)

    @property
    def created_at(self) -> datetime | None:
        return _parse_timestamp(self.properties.get(TicketProps.CREATE_DATE))

    def age_key(self) -> tuple[datetime, int, str]:
        """Sort key putting the oldest ticket first (unknown creation dates last)."""
        created = self.created_at or datetime.max.replace(tzinfo=UTC)
        numeric_id = int(self.id) if self.id.isdigit() else 0
        return (created, numeric_id, self.id)
