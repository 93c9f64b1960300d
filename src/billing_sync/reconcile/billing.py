"""Billing ticket reconciler: one ticket per billing event inside the horizon."""

from dataclasses import dataclass
from datetime import date, timedelta

import structlog

from billing_sync.config import get_settings
from billing_sync.config.pipelines import PipelineConfig, load_pipeline_config
from billing_sync.crm.client import CRMClient
from billing_sync.crm.properties import PropertySchemaCache, TicketProps
from billing_sync.dates import format_date_iso
from billing_sync.errors import ErrorReporter
from billing_sync.keys import KeyBuildError, build_key
from billing_sync.models import Contract, Line, Ticket
from billing_sync.reconcile.base import (
    OpKind,
    PlanExecutor,
    ReconcilePlan,
    ReconcileResult,
    TicketIndex,
    TicketOp,
    key_drift_props,
    load_contract_tickets,
    new_ticket_props,
)
from billing_sync.schedule import materialize_dates, resolve_billing_config

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DesiredTicket:
    key: str
    line: Line
    ymd: str


class BillingTicketReconciler:
    """Diffs the billing events due within the horizon against existing tickets.

    Only tickets in an open billing stage are ever archived. Forecast-stage
    tickets holding a desired key are promoted into the billing pipeline;
    invoiced tickets are never touched.
    """

    def __init__(
        self,
        client: CRMClient,
        pipelines: PipelineConfig | None = None,
        *,
        horizon_days: int | None = None,
        max_occurrences: int | None = None,
        max_slots: int | None = None,
        default_start_to_today: bool | None = None,
        lost_stage: str | None = None,
        schema: PropertySchemaCache | None = None,
        reporter: ErrorReporter | None = None,
    ):
        settings = get_settings()
        self._client = client
        self._pipelines = pipelines or load_pipeline_config()
        self.horizon_days = horizon_days if horizon_days is not None else settings.billing_horizon_days
        self.max_occurrences = max_occurrences or settings.billing_max_occurrences
        self.max_slots = max_slots or settings.billing_max_slots
        self.default_start_to_today = (
            settings.default_start_to_today if default_start_to_today is None else default_start_to_today
        )
        self.lost_stage = lost_stage if lost_stage is not None else settings.deal_stage_lost
        self._reporter = reporter
        self._executor = PlanExecutor(
            client, schema=schema, reporter=reporter, component="billing_reconciler"
        )
        self._logger = logger.bind(component="billing_reconciler")

    def _desired_for_line(
        self, contract: Contract, line: Line, today: date
    ) -> list[DesiredTicket]:
        config = resolve_billing_config(
            line.properties,
            today,
            max_occurrences=self.max_occurrences,
            default_start_to_today=self.default_start_to_today,
            line_id=line.id,
        )
        horizon_end = today + timedelta(days=self.horizon_days)
        dates = materialize_dates(config, line.properties, self.max_slots)
        desired = []
        for billing_date in dates:
            if today <= billing_date <= horizon_end:
                ymd = format_date_iso(billing_date) or ""
                desired.append(
                    DesiredTicket(key=build_key(contract.id, line.line_key, ymd), line=line, ymd=ymd)
                )
        return desired

    def plan(
        self,
        contract: Contract,
        lines: list[Line],
        tickets: list[Ticket],
        today: date,
        held_line_ids: frozenset[str] = frozenset(),
    ) -> ReconcilePlan:
        """Compute the operations bringing billing tickets in line with the schedule.

        Lines in ``held_line_ids`` failed preparation this run: nothing is
        created for them and their existing tickets are left alone.
        """
        plan = ReconcilePlan()
        index = TicketIndex(contract.id, tickets, self._pipelines)
        contract_blocked = contract.is_paused or contract.is_cancelled(self.lost_stage)

        live_line_keys = {line.line_key for line in lines if line.line_key}
        blocked_line_keys: set[str] = set()
        failed_line_keys: set[str] = set()
        desired: dict[str, DesiredTicket] = {}

        for line in lines:
            if line.id in held_line_ids:
                if line.line_key:
                    failed_line_keys.add(line.line_key)
                continue
            if contract_blocked or line.is_paused:
                if line.line_key:
                    blocked_line_keys.add(line.line_key)
                continue
            try:
                for want in self._desired_for_line(contract, line, today):
                    desired.setdefault(want.key, want)
            except KeyBuildError as e:
                if line.line_key:
                    failed_line_keys.add(line.line_key)
                plan.errors.append(f"line {line.id}: {e}")
                self._logger.error(
                    "line_schedule_failed", contract_id=contract.id, line_id=line.id, error=str(e)
                )
                if self._reporter is not None:
                    self._reporter.report_exception("line_item", line.id, e, "billing key")

        for key, want in desired.items():
            entry = index.get(key)
            pipeline = self._pipelines.pipeline_for(want.line.is_automated)
            if entry is None:
                plan.add(
                    TicketOp(
                        kind=OpKind.CREATE,
                        key=key,
                        line_id=want.line.id,
                        properties=new_ticket_props(
                            contract,
                            want.line,
                            key,
                            want.ymd,
                            pipeline.pipeline_id,
                            pipeline.initial_stage,
                        ),
                        reason="missing",
                    )
                )
                continue

            ticket = entry.ticket
            if self._pipelines.is_invoiced_stage(ticket.stage):
                continue

            patch = key_drift_props(entry, contract.id, want.line.line_key, want.ymd)
            reason = "drift"
            if index.is_forecast(ticket):
                patch[TicketProps.PIPELINE] = pipeline.pipeline_id
                patch[TicketProps.STAGE] = pipeline.initial_stage
                reason = "promote_forecast"
            elif self._pipelines.is_cancelled_stage(ticket.stage):
                patch[TicketProps.PIPELINE] = pipeline.pipeline_id
                patch[TicketProps.STAGE] = pipeline.initial_stage
                reason = "reopen_cancelled"
            if patch:
                plan.add(
                    TicketOp(
                        kind=OpKind.UPDATE,
                        key=key,
                        ticket_id=ticket.id,
                        line_id=want.line.id,
                        properties=patch,
                        reason=reason,
                    )
                )

        for loser in index.losers:
            if index.is_forecast(loser.ticket) or not self._pipelines.is_open_stage(loser.ticket.stage):
                continue
            if not index.is_own(loser):
                continue
            plan.add(
                TicketOp(
                    kind=OpKind.DELETE,
                    key=loser.key,
                    ticket_id=loser.ticket.id,
                    reason="duplicate",
                )
            )

        for key, entry in index.winners.items():
            if key in desired:
                continue
            ticket = entry.ticket
            if index.is_forecast(ticket) or not self._pipelines.is_open_stage(ticket.stage):
                continue
            if not index.is_own(entry) or entry.line_key in failed_line_keys:
                continue

            if entry.line_key not in live_line_keys:
                reason = "orphan"
            elif contract_blocked or entry.line_key in blocked_line_keys:
                ticket_date = entry.date
                if ticket_date is None or ticket_date < today:
                    continue
                reason = "paused"
            else:
                continue
            plan.add(TicketOp(kind=OpKind.DELETE, key=key, ticket_id=ticket.id, reason=reason))

        return plan

    async def reconcile(
        self,
        contract: Contract,
        lines: list[Line],
        today: date,
        dry_run: bool = False,
        tickets: list[Ticket] | None = None,
        held_line_ids: frozenset[str] = frozenset(),
    ) -> ReconcileResult:
        """Plan and apply billing ticket operations for one contract."""
        if not contract.billing_active:
            self._logger.info("billing_not_active", contract_id=contract.id)
            return ReconcileResult(skipped=len(lines))

        if tickets is None:
            tickets = await load_contract_tickets(self._client, contract.id)
        plan = self.plan(contract, lines, tickets, today, held_line_ids)
        self._logger.info(
            "billing_plan",
            contract_id=contract.id,
            tickets=len(tickets),
            creates=len(plan.creates),
            updates=len(plan.updates),
            deletes=len(plan.deletes),
            errors=len(plan.errors),
            dry_run=dry_run,
        )
        return await self._executor.execute(contract.id, plan, dry_run=dry_run)
