"""Forecast ticket reconciler.

Forecast tickets are placeholders for future billing events, parked in a
forecast stage chosen by the deal's probability bucket. This reconciler only
ever writes to tickets in a forecast stage; any other ticket holding a key it
wants wins the slot and the key is skipped.
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime

import structlog

from billing_sync.config import get_settings
from billing_sync.config.pipelines import PipelineConfig, load_pipeline_config
from billing_sync.crm.client import CRMClient, CRMError
from billing_sync.crm.properties import LineProps, ObjectType, PropertySchemaCache, TicketProps
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
from billing_sync.schedule import forecast_dates, resolve_billing_config

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DesiredForecast:
    key: str
    line: Line
    ymd: str
    pipeline_id: str
    stage_id: str


class ForecastTicketReconciler:
    """Keeps one forecast ticket per future billing event of each line."""

    def __init__(
        self,
        client: CRMClient,
        pipelines: PipelineConfig | None = None,
        *,
        ceiling: int | None = None,
        max_slots: int | None = None,
        default_start_to_today: bool | None = None,
        lost_stage: str | None = None,
        schema: PropertySchemaCache | None = None,
        reporter: ErrorReporter | None = None,
    ):
        settings = get_settings()
        self._client = client
        self._pipelines = pipelines or load_pipeline_config()
        self.ceiling = ceiling or settings.forecast_max_occurrences
        self.max_slots = max_slots or settings.billing_max_slots
        self.default_start_to_today = (
            settings.default_start_to_today if default_start_to_today is None else default_start_to_today
        )
        self.lost_stage = lost_stage if lost_stage is not None else settings.deal_stage_lost
        self._schema = schema
        self._reporter = reporter
        self._executor = PlanExecutor(
            client, schema=schema, reporter=reporter, component="forecast_reconciler"
        )
        self._logger = logger.bind(component="forecast_reconciler")

    def _desired_for_line(
        self, contract: Contract, line: Line, today: date
    ) -> list[DesiredForecast]:
        config = resolve_billing_config(
            line.properties,
            today,
            max_occurrences=self.ceiling,
            default_start_to_today=self.default_start_to_today,
            line_id=line.id,
        )
        pipeline = self._pipelines.pipeline_for(line.is_automated)
        stage_id = self._pipelines.forecast_stage_for(contract.stage, line.is_automated)
        desired = []
        dates = forecast_dates(config, line.properties, ceiling=self.ceiling, max_slots=self.max_slots)
        for forecast_date in dates:
            if forecast_date < today:
                continue
            ymd = format_date_iso(forecast_date) or ""
            desired.append(
                DesiredForecast(
                    key=build_key(contract.id, line.line_key, ymd),
                    line=line,
                    ymd=ymd,
                    pipeline_id=pipeline.pipeline_id,
                    stage_id=stage_id,
                )
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
        """Compute forecast ticket operations for one contract."""
        plan = ReconcilePlan()
        index = TicketIndex(contract.id, tickets, self._pipelines)
        contract_blocked = contract.is_paused or contract.is_cancelled(self.lost_stage)

        lines_by_key = {line.line_key: line for line in lines if line.line_key}
        failed_line_keys: set[str] = set()
        desired: dict[str, DesiredForecast] = {}

        for line in lines:
            if line.id in held_line_ids:
                if line.line_key:
                    failed_line_keys.add(line.line_key)
                continue
            if contract_blocked or line.is_paused:
                continue
            try:
                for want in self._desired_for_line(contract, line, today):
                    desired.setdefault(want.key, want)
            except KeyBuildError as e:
                if line.line_key:
                    failed_line_keys.add(line.line_key)
                plan.errors.append(f"line {line.id}: {e}")
                self._logger.error(
                    "line_forecast_failed", contract_id=contract.id, line_id=line.id, error=str(e)
                )
                if self._reporter is not None:
                    self._reporter.report_exception("line_item", line.id, e, "forecast key")

        for key, want in desired.items():
            entry = index.get(key)
            if entry is None:
                plan.add(
                    TicketOp(
                        kind=OpKind.CREATE,
                        key=key,
                        line_id=want.line.id,
                        properties=new_ticket_props(
                            contract, want.line, key, want.ymd, want.pipeline_id, want.stage_id
                        ),
                        reason="missing",
                    )
                )
                continue

            if not index.is_forecast(entry.ticket):
                plan.skipped += 1
                self._logger.debug(
                    "forecast_slot_protected", key=key, ticket_id=entry.ticket.id, stage=entry.ticket.stage
                )
                continue

            patch = key_drift_props(entry, contract.id, want.line.line_key, want.ymd)
            if entry.ticket.stage != want.stage_id:
                patch[TicketProps.STAGE] = want.stage_id
            if entry.ticket.pipeline != want.pipeline_id:
                patch[TicketProps.PIPELINE] = want.pipeline_id
            if patch:
                plan.add(
                    TicketOp(
                        kind=OpKind.UPDATE,
                        key=key,
                        ticket_id=entry.ticket.id,
                        line_id=want.line.id,
                        properties=patch,
                        reason="drift",
                    )
                )

        for loser in index.losers:
            if not index.is_forecast(loser.ticket) or not index.is_own(loser):
                continue
            line = lines_by_key.get(loser.line_key)
            plan.add(
                TicketOp(
                    kind=OpKind.DELETE,
                    key=loser.key,
                    ticket_id=loser.ticket.id,
                    line_id=line.id if line else None,
                    reason="duplicate",
                )
            )

        for key, entry in index.winners.items():
            if key in desired or not index.is_forecast(entry.ticket) or not index.is_own(entry):
                continue
            if entry.line_key in failed_line_keys:
                continue
            line = lines_by_key.get(entry.line_key)
            if line is None:
                reason = "orphan"
            elif contract_blocked or line.is_paused:
                reason = "paused"
            else:
                reason = "not_scheduled"
            plan.add(
                TicketOp(
                    kind=OpKind.DELETE,
                    key=key,
                    ticket_id=entry.ticket.id,
                    line_id=line.id if line else None,
                    reason=reason,
                )
            )

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
        """Plan and apply forecast ticket operations, then stamp the changed lines."""
        if tickets is None:
            tickets = await load_contract_tickets(self._client, contract.id)
        plan = self.plan(contract, lines, tickets, today, held_line_ids)
        self._logger.info(
            "forecast_plan",
            contract_id=contract.id,
            bucket=self._pipelines.bucket_for_deal_stage(contract.stage),
            creates=len(plan.creates),
            updates=len(plan.updates),
            deletes=len(plan.deletes),
            skipped=plan.skipped,
            dry_run=dry_run,
        )
        result = await self._executor.execute(contract.id, plan, dry_run=dry_run)

        if not dry_run:
            await self._stamp_lines(plan.lines_touched(), result)
        return result

    async def _stamp_lines(self, line_ids: set[str], result: ReconcileResult) -> None:
        stamp = datetime.now(UTC).isoformat(timespec="seconds")
        for line_id in sorted(line_ids):
            props = {LineProps.FORECAST_LAST_GENERATED_AT: stamp}
            if self._schema is not None:
                props = await self._schema.writable(ObjectType.LINE_ITEMS, props)
            if not props:
                continue
            try:
                await self._client.update_object(ObjectType.LINE_ITEMS, line_id, props)
            except CRMError as e:
                result.errors.append(f"line {line_id}: forecast stamp failed: {e}")
                self._logger.warning("forecast_stamp_failed", line_id=line_id, error=str(e))
