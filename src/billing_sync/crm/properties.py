"""CRM object types, property names and the per-run property schema cache."""

import math
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from billing_sync.crm.client import CRMClient

logger = structlog.get_logger(__name__)


class ObjectType:
    """CRM object type path segments."""

    DEALS = "deals"
    LINE_ITEMS = "line_items"
    TICKETS = "tickets"
    INVOICES = "invoices"


class DealProps:
    NAME = "dealname"
    STAGE = "dealstage"
    CURRENCY = "deal_currency_code"
    CLOSE_DATE = "closedate"
    BILLING_ACTIVE = "billing_active"
    BILLING_PAUSED = "billing_paused"
    BILLING_CANCELLED = "billing_cancelled"
    IS_MIRROR = "is_mirror"
    NEXT_DATE = "billing_next_date"
    LAST_DATE = "billing_last_date"
    FREQUENCY_SUMMARY = "billing_frequency_summary"


class LineProps:
    NAME = "name"
    PRICE = "price"
    QUANTITY = "quantity"
    CREATE_DATE = "createdate"
    HS_CREATE_DATE = "hs_createdate"

    # Recurring configuration
    FREQUENCY = "recurringbillingfrequency"
    FREQUENCY_HS = "hs_recurring_billing_frequency"
    FREQUENCY_LEGACY = "billing_frequency"
    START_DATE = "hs_recurring_billing_start_date"
    START_DATE_ALIAS = "recurringbillingstartdate"
    START_DATE_LEGACY = "billing_start_date"
    NUMBER_OF_PAYMENTS = "hs_recurring_billing_number_of_payments"
    NUMBER_OF_PAYMENTS_LEGACY = "number_of_payments"
    DELAY_DAYS = "hs_billing_start_delay_days"
    DELAY_MONTHS = "hs_billing_start_delay_months"
    IRREGULAR = "irregular"
    AUTOMATED = "billing_automated"
    PAUSED = "billing_paused"
    PAUSE_REASON = "billing_pause_reason"

    # Identity
    LINE_KEY = "line_item_key"

    # Written back by the engine
    NEXT_DATE = "billing_next_date"
    LAST_DATE = "billing_last_date"
    TOTAL_COUNT = "billing_total_count"
    EMITTED_COUNT = "billing_emitted_count"
    REMAINING_COUNT = "billing_remaining_count"
    SCHEDULE_GENERATED = "billing_schedule_generated"
    LAST_SYNCED_AT = "billing_last_synced_at"
    FORECAST_LAST_GENERATED_AT = "forecast_last_generated_at"
    ERROR = "billing_error"

    # Invoice linkage
    INVOICE_ID = "invoice_id"
    INVOICE_KEY = "invoice_key"
    OF_INVOICE_ID = "of_invoice_id"
    OF_INVOICE_KEY = "of_invoice_key"
    OF_TICKET_ID = "of_ticket_id"
    OF_TICKET_KEY = "of_ticket_key"
    LAST_BILLING_PERIOD = "last_billing_period"
    LAST_TICKETED_DATE = "last_ticketed_date"

    @staticmethod
    def manual_date(slot: int) -> str:
        """Manual override date slot (slot 1 is the start date itself)."""
        return f"billing_date_{slot}"


class TicketProps:
    SUBJECT = "subject"
    PIPELINE = "hs_pipeline"
    STAGE = "hs_pipeline_stage"
    CREATE_DATE = "createdate"
    TICKET_KEY = "of_ticket_key"
    LINE_KEY = "of_line_item_key"
    DEAL_ID = "of_deal_id"
    EXPECTED_DATE = "expected_billing_date"
    INVOICE_ID = "of_invoice_id"
    ERROR = "of_billing_error"


class InvoiceProps:
    INVOICE_KEY = "of_invoice_key"


DEAL_READ_PROPS = [
    DealProps.NAME,
    DealProps.STAGE,
    DealProps.CURRENCY,
    DealProps.CLOSE_DATE,
    DealProps.BILLING_ACTIVE,
    DealProps.BILLING_PAUSED,
    DealProps.BILLING_CANCELLED,
    DealProps.IS_MIRROR,
    DealProps.NEXT_DATE,
    DealProps.LAST_DATE,
    DealProps.FREQUENCY_SUMMARY,
]

TICKET_READ_PROPS = [
    TicketProps.SUBJECT,
    TicketProps.PIPELINE,
    TicketProps.STAGE,
    TicketProps.CREATE_DATE,
    TicketProps.TICKET_KEY,
    TicketProps.LINE_KEY,
    TicketProps.DEAL_ID,
    TicketProps.EXPECTED_DATE,
    TicketProps.INVOICE_ID,
]


def line_read_props(max_slots: int) -> list[str]:
    """Line item properties the engine reads, including manual date slots."""
    props = [
        LineProps.NAME,
        LineProps.PRICE,
        LineProps.QUANTITY,
        LineProps.CREATE_DATE,
        LineProps.HS_CREATE_DATE,
        LineProps.FREQUENCY,
        LineProps.FREQUENCY_HS,
        LineProps.FREQUENCY_LEGACY,
        LineProps.START_DATE,
        LineProps.START_DATE_ALIAS,
        LineProps.START_DATE_LEGACY,
        LineProps.NUMBER_OF_PAYMENTS,
        LineProps.NUMBER_OF_PAYMENTS_LEGACY,
        LineProps.DELAY_DAYS,
        LineProps.DELAY_MONTHS,
        LineProps.IRREGULAR,
        LineProps.AUTOMATED,
        LineProps.PAUSED,
        LineProps.PAUSE_REASON,
        LineProps.LINE_KEY,
        LineProps.NEXT_DATE,
        LineProps.LAST_DATE,
        LineProps.TOTAL_COUNT,
        LineProps.EMITTED_COUNT,
        LineProps.REMAINING_COUNT,
        LineProps.SCHEDULE_GENERATED,
        LineProps.LAST_SYNCED_AT,
        LineProps.FORECAST_LAST_GENERATED_AT,
        LineProps.ERROR,
        LineProps.INVOICE_ID,
        LineProps.INVOICE_KEY,
        LineProps.OF_INVOICE_ID,
        LineProps.OF_INVOICE_KEY,
        LineProps.OF_TICKET_ID,
        LineProps.OF_TICKET_KEY,
        LineProps.LAST_BILLING_PERIOD,
        LineProps.LAST_TICKETED_DATE,
    ]
    props.extend(LineProps.manual_date(slot) for slot in range(2, max_slots + 1))
    return props


def clean_update_props(props: dict[str, Any]) -> dict[str, Any]:
    """Drop values the CRM would reject from an update payload.

    ``None`` and NaN are removed; empty strings are kept because they are how
    a property is blanked.
    """
    cleaned: dict[str, Any] = {}
    for key, value in props.items():
        if value is None:
            continue
        if isinstance(value, float) and math.isnan(value):
            logger.warning("skipping_nan_property", property=key)
            continue
        cleaned[key] = value if isinstance(value, str) else str(value)
    return cleaned


class PropertySchemaCache:
    """Memoized property-name sets per object type for one batch run.

    A failed schema lookup is cached as "unknown", in which case writes are
    not filtered.
    """

    def __init__(self, client: "CRMClient"):
        self._client = client
        self._schemas: dict[str, frozenset[str] | None] = {}

    async def get(self, object_type: str) -> frozenset[str] | None:
        if object_type in self._schemas:
            return self._schemas[object_type]

        from billing_sync.crm.client import CRMError

        try:
            names = frozenset(await self._client.get_property_names(object_type))
            logger.debug("property_schema_cached", object_type=object_type, count=len(names))
        except CRMError as e:
            logger.warning("property_schema_unavailable", object_type=object_type, error=str(e))
            names = None
        self._schemas[object_type] = names
        return names

    async def writable(
        self, object_type: str, props: dict[str, Any]
    ) -> dict[str, Any]:
        """Clean a payload and keep only properties that exist on the object type."""
        cleaned = clean_update_props(props)
        schema = await self.get(object_type)
        if schema is None or not cleaned:
            return cleaned

        valid = {k: v for k, v in cleaned.items() if k in schema}
        missing = sorted(k for k in cleaned if k not in schema)
        if missing:
            logger.warning("missing_properties", object_type=object_type, properties=missing)
        return valid
