"""Per-contract billing pipeline and the batch runner over every eligible contract."""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime

import structlog

from billing_sync.config import get_settings
from billing_sync.config.pipelines import PipelineConfig, load_pipeline_config
from billing_sync.config.settings import FlatSettings
from billing_sync.crm.client import CRMClient, CRMError
from billing_sync.crm.properties import (
    DEAL_READ_PROPS,
    DealProps,
    LineProps,
    ObjectType,
    PropertySchemaCache,
    line_read_props,
)
from billing_sync.dates import format_date_iso, parse_date, to_ymd
from billing_sync.errors import ErrorReporter
from billing_sync.invoices import InvoiceGuard
from billing_sync.line_keys import ensure_line_key, sanitize_cloned_line
from billing_sync.models import Contract, Line, Ticket
from billing_sync.reconcile import (
    BillingTicketReconciler,
    ForecastTicketReconciler,
    ReconcileResult,
    TicketIndex,
    load_contract_tickets,
    project_tickets,
)
from billing_sync.schedule import (
    BillingConfig,
    compute_counters,
    materialize_dates,
    resolve_billing_config,
)
from billing_sync.sync import (
    build_contract_summary_patch,
    build_line_sync_patch,
    clear_generated_slots,
    normalize_start_delay,
)

logger = structlog.get_logger(__name__)

# Invalid invoice claims that clear the line's invoice reference
_REJECTED_INVOICE_REASONS = frozenset({"invoice_not_found", "invoice_id_inherited_or_mismatch"})


@dataclass
class PreparedLine:
    """A line ready to sync: its resolved configuration and changes decided so far."""

    config: BillingConfig
    pending: dict[str, str] = field(default_factory=dict)


@dataclass
class ContractOutcome:
    """Result of processing one contract."""

    contract_id: str
    billing: ReconcileResult = field(default_factory=ReconcileResult)
    forecast: ReconcileResult = field(default_factory=ReconcileResult)
    lines_updated: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.billing.errors and not self.forecast.errors

    def all_errors(self) -> list[str]:
        return [*self.errors, *self.billing.errors, *self.forecast.errors]


@dataclass
class BatchSummary:
    """Aggregate counters of a batch run."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)

    def add(self, outcome: ContractOutcome) -> None:
        self.processed += 1
        if outcome.ok:
            self.succeeded += 1
        else:
            self.failed += 1
            self.errors.extend(f"deal {outcome.contract_id}: {e}" for e in outcome.all_errors())
        for result in (outcome.billing, outcome.forecast):
            self.created += result.created
            self.updated += result.updated
            self.deleted += result.deleted


class ContractProcessor:
    """Runs the full billing pipeline for contracts.

    For each contract: issue/repair line keys, resolve start delays and guard
    invoice claims; reconcile billing tickets; write schedule counters and the
    latest ticketed date back onto lines; reconcile forecast tickets; update
    the contract summary.
    """

    def __init__(
        self,
        client: CRMClient,
        pipelines: PipelineConfig | None = None,
        *,
        settings: FlatSettings | None = None,
        dry_run: bool | None = None,
    ):
        self._client = client
        self._settings = settings or get_settings()
        self._pipelines = pipelines or load_pipeline_config()
        self.dry_run = self._settings.dry_run if dry_run is None else dry_run
        self._schema = PropertySchemaCache(client)
        self._guard = InvoiceGuard(client)
        self._logger = logger.bind(component="contract_processor")

    def reset_caches(self) -> None:
        """Start a new run with a fresh property schema cache."""
        self._schema = PropertySchemaCache(self._client)

    # === Reads ===

    async def find_eligible_contract_ids(self) -> list[str]:
        """Ids of every contract with billing active that is not a mirror."""
        filters = [
            {"propertyName": DealProps.BILLING_ACTIVE, "operator": "EQ", "value": "true"},
            {"propertyName": DealProps.IS_MIRROR, "operator": "NEQ", "value": "true"},
        ]
        records = await self._client.search_all(ObjectType.DEALS, filters, [DealProps.NAME])
        return list(dict.fromkeys(str(r["id"]) for r in records))

    async def _load_contract(self, contract_id: str) -> tuple[Contract, list[Line]]:
        record = await self._client.get_object(ObjectType.DEALS, contract_id, DEAL_READ_PROPS)
        contract = Contract.from_record(record)
        line_ids = await self._client.get_associated_ids(
            ObjectType.DEALS, contract_id, ObjectType.LINE_ITEMS
        )
        if not line_ids:
            return contract, []
        records = await self._client.batch_read(
            ObjectType.LINE_ITEMS, line_ids, line_read_props(self._settings.billing_max_slots)
        )
        return contract, [Line.from_record(r) for r in records]

    # === Writes ===

    async def _write(self, object_type: str, object_id: str, props: dict[str, str]) -> bool:
        writable = await self._schema.writable(object_type, props)
        if not writable:
            return False
        if self.dry_run:
            self._logger.info(
                "dry_run_update", object_type=object_type, object_id=object_id, properties=writable
            )
            return True
        await self._client.update_object(object_type, object_id, writable)
        return True

    # === Line preparation ===

    async def _prepare_line(
        self,
        contract: Contract,
        line: Line,
        today: date,
        reporter: ErrorReporter,
    ) -> PreparedLine:
        """Repair identity, resolve delays, guard invoices and resolve the schedule of one line."""
        settings = self._settings
        log = self._logger.bind(contract_id=contract.id, line_id=line.id)

        decision = ensure_line_key(contract.id, line)
        if decision.should_update:
            schema = await self._schema.get(ObjectType.LINE_ITEMS)
            if schema is not None and LineProps.LINE_KEY not in schema:
                raise CRMError(f"property {LineProps.LINE_KEY} does not exist on line items")
            patch = {LineProps.LINE_KEY: decision.key}
            if decision.clone_detected:
                patch.update(sanitize_cloned_line(line))
                log.warning("cloned_line_detected", previous_key=line.line_key, new_key=decision.key)
                reporter.report(
                    "line_item",
                    line.id,
                    "line copied from another record; identity key reissued and billing state reset",
                    level="warning",
                )
            await self._write(ObjectType.LINE_ITEMS, line.id, patch)
            line.properties.update(patch)

        await normalize_start_delay(
            self._client,
            line,
            contract,
            today,
            cooldown=settings.start_delay_cooldown_seconds,
            dry_run=self.dry_run,
        )

        pending: dict[str, str] = {}
        invoice_id = line.get(LineProps.INVOICE_ID)
        period = to_ymd(line.get(LineProps.LAST_BILLING_PERIOD))
        if invoice_id and period:
            validation = await self._guard.validate(contract.id, line.line_key, invoice_id, period)
            if not validation.valid:
                reporter.report(
                    "line_item", line.id, f"invoice {invoice_id} rejected: {validation.reason}"
                )
                if validation.reason in _REJECTED_INVOICE_REASONS:
                    pending[LineProps.INVOICE_ID] = ""
                    if line.get(LineProps.INVOICE_KEY):
                        pending[LineProps.INVOICE_KEY] = ""

        config = resolve_billing_config(
            line.properties,
            today,
            max_occurrences=settings.billing_max_occurrences,
            default_start_to_today=settings.default_start_to_today,
            line_id=line.id,
        )
        if config.start_defaulted:
            reporter.report(
                "line_item",
                line.id,
                f"no billing start date set; schedule starts today ({format_date_iso(today)})",
                level="warning",
            )
        elif config.start_date is None:
            reporter.report("line_item", line.id, "no billing start date set; nothing scheduled")

        if config.is_irregular:
            cleared = clear_generated_slots(line, today, settings.billing_max_slots)
            line.properties.update(cleared)
            pending.update(cleared)

        return PreparedLine(config=config, pending=pending)

    async def _sync_line(
        self,
        line: Line,
        prepared: PreparedLine,
        today: date,
        reporter: ErrorReporter,
        ticketed: date | None = None,
    ) -> bool:
        """Write counters, next/last dates and the ticketed date back onto a line."""
        settings = self._settings
        known = [d for d in (parse_date(line.get(LineProps.LAST_TICKETED_DATE)), ticketed) if d]
        last_ticketed = max(known) if known else None

        dates = materialize_dates(prepared.config, line.properties, settings.billing_max_slots)
        counters = compute_counters(
            dates,
            today,
            settings.billing_max_slots,
            last_ticketed=last_ticketed,
            one_time=prepared.config.is_one_time,
        )
        patch = build_line_sync_patch(
            line,
            prepared.config,
            dates,
            counters,
            max_slots=settings.billing_max_slots,
            synced_at=datetime.now(UTC).isoformat(timespec="seconds"),
            pending=prepared.pending,
            last_ticketed=last_ticketed,
            clear_error=("line_item", line.id) not in reporter.pending,
        )
        written = await self._write(ObjectType.LINE_ITEMS, line.id, patch) if patch else False
        line.properties.update(patch)
        self._logger.debug(
            "line_synced",
            line_id=line.id,
            total=counters.total,
            emitted=counters.emitted,
            remaining=counters.remaining,
            next_date=format_date_iso(counters.next_date),
            last_ticketed=format_date_iso(last_ticketed),
            changed=sorted(patch),
        )
        return written

    async def _tickets_after_billing(
        self, contract_id: str, tickets: list[Ticket], billing: ReconcileResult
    ) -> list[Ticket]:
        """Tickets as billing left them: reloaded, or projected from the plan in dry-run."""
        plan = billing.plan
        if plan is None or plan.is_empty:
            return tickets
        if self.dry_run:
            return project_tickets(tickets, plan)
        return await load_contract_tickets(self._client, contract_id)

    # === Pipeline ===

    async def process_contract(self, contract_id: str, today: date) -> ContractOutcome:
        """Process one contract end to end. Never raises for CRM failures."""
        outcome = ContractOutcome(contract_id=str(contract_id))
        log = self._logger.bind(contract_id=contract_id)
        reporter = ErrorReporter(self._client, dry_run=self.dry_run)

        try:
            contract, lines = await self._load_contract(str(contract_id))
        except CRMError as e:
            outcome.errors.append(f"load failed: {e}")
            log.error("contract_load_failed", status_code=e.status_code, error=str(e))
            return outcome

        if contract.is_mirror:
            outcome.skipped = True
            log.info("contract_skipped_mirror")
            return outcome

        prepared: dict[str, PreparedLine] = {}
        held: set[str] = set()
        for line in lines:
            try:
                prepared[line.id] = await self._prepare_line(contract, line, today, reporter)
            except CRMError as e:
                held.add(line.id)
                outcome.errors.append(f"line {line.id}: {e}")
                log.error("line_prepare_failed", line_id=line.id, status_code=e.status_code, error=str(e))
                reporter.report_exception("line_item", line.id, e, "line sync")

        billing = BillingTicketReconciler(
            self._client,
            self._pipelines,
            horizon_days=self._settings.billing_horizon_days,
            max_occurrences=self._settings.billing_max_occurrences,
            max_slots=self._settings.billing_max_slots,
            default_start_to_today=self._settings.default_start_to_today,
            lost_stage=self._settings.deal_stage_lost,
            schema=self._schema,
            reporter=reporter,
        )
        forecast = ForecastTicketReconciler(
            self._client,
            self._pipelines,
            ceiling=self._settings.forecast_max_occurrences,
            max_slots=self._settings.billing_max_slots,
            default_start_to_today=self._settings.default_start_to_today,
            lost_stage=self._settings.deal_stage_lost,
            schema=self._schema,
            reporter=reporter,
        )

        tickets: list[Ticket] | None = None
        ticketed: dict[str, date] = {}
        try:
            tickets = await load_contract_tickets(self._client, contract.id)
            outcome.billing = await billing.reconcile(
                contract,
                lines,
                today,
                dry_run=self.dry_run,
                tickets=tickets,
                held_line_ids=frozenset(held),
            )
            tickets = await self._tickets_after_billing(contract.id, tickets, outcome.billing)
            ticketed = TicketIndex(contract.id, tickets, self._pipelines).latest_billing_dates()
        except CRMError as e:
            tickets = None
            outcome.errors.append(f"reconcile failed: {e}")
            log.error("contract_reconcile_failed", status_code=e.status_code, error=str(e))

        for line in lines:
            if line.id not in prepared:
                continue
            try:
                if await self._sync_line(
                    line, prepared[line.id], today, reporter, ticketed.get(line.line_key)
                ):
                    outcome.lines_updated += 1
            except CRMError as e:
                outcome.errors.append(f"line {line.id}: {e}")
                log.error("line_sync_failed", line_id=line.id, status_code=e.status_code, error=str(e))
                reporter.report_exception("line_item", line.id, e, "line sync")

        if tickets is not None:
            try:
                outcome.forecast = await forecast.reconcile(
                    contract,
                    lines,
                    today,
                    dry_run=self.dry_run,
                    tickets=tickets,
                    held_line_ids=frozenset(held),
                )
            except CRMError as e:
                outcome.errors.append(f"forecast reconcile failed: {e}")
                log.error("contract_forecast_failed", status_code=e.status_code, error=str(e))

        try:
            summary = build_contract_summary_patch(
                contract, lines, today, lost_stage=self._settings.deal_stage_lost
            )
            if summary:
                await self._write(ObjectType.DEALS, contract.id, summary)
        except CRMError as e:
            outcome.errors.append(f"contract summary failed: {e}")
            log.error("contract_summary_failed", status_code=e.status_code, error=str(e))

        await reporter.flush()

        log.info(
            "contract_processed",
            lines=len(lines),
            lines_updated=outcome.lines_updated,
            billing_created=outcome.billing.created,
            billing_updated=outcome.billing.updated,
            billing_deleted=outcome.billing.deleted,
            forecast_created=outcome.forecast.created,
            forecast_updated=outcome.forecast.updated,
            forecast_deleted=outcome.forecast.deleted,
            forecast_skipped=outcome.forecast.skipped,
            errors=len(outcome.all_errors()),
            dry_run=self.dry_run,
        )
        return outcome

    async def process_all(self, today: date, contract_ids: list[str] | None = None) -> BatchSummary:
        """Process every eligible contract; one failure never stops the batch."""
        self.reset_caches()
        summary = BatchSummary()
        if contract_ids is None:
            try:
                contract_ids = await self.find_eligible_contract_ids()
            except CRMError as e:
                summary.errors.append(f"contract search failed: {e}")
                self._logger.error("contract_search_failed", status_code=e.status_code, error=str(e))
                return summary

        self._logger.info("batch_started", contracts=len(contract_ids), today=today.isoformat())
        for contract_id in contract_ids:
            outcome = await self.process_contract(contract_id, today)
            if outcome.skipped:
                continue
            summary.add(outcome)

        self._logger.info(
            "batch_finished",
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
            created=summary.created,
            updated=summary.updated,
            deleted=summary.deleted,
        )
        return summary
