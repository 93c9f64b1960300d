"""Shared reconcile plumbing: ticket index, operation plan and ordered executor."""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

import structlog

from billing_sync.config.pipelines import PipelineConfig
from billing_sync.crm.client import TICKET_TO_DEAL, Association, CRMClient, CRMError, NotFoundError
from billing_sync.crm.properties import (
    TICKET_READ_PROPS,
    ObjectType,
    PropertySchemaCache,
    TicketProps,
    clean_update_props,
)
from billing_sync.dates import format_date_iso, parse_date
from billing_sync.errors import ErrorReporter
from billing_sync.keys import KeyBuildError, build_key, parse_key
from billing_sync.models import Contract, Line, Ticket

logger = structlog.get_logger(__name__)


class OpKind(str, Enum):
    """Ticket operation kinds, in execution order."""

    DELETE = "delete"
    UPDATE = "update"
    CREATE = "create"


@dataclass
class TicketOp:
    """One planned ticket write."""

    kind: OpKind
    key: str
    properties: dict[str, Any] = field(default_factory=dict)
    ticket_id: str | None = None
    line_id: str | None = None
    reason: str = ""


@dataclass
class ReconcilePlan:
    """Operations computed for one contract, grouped by kind."""

    deletes: list[TicketOp] = field(default_factory=list)
    updates: list[TicketOp] = field(default_factory=list)
    creates: list[TicketOp] = field(default_factory=list)
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def add(self, op: TicketOp) -> None:
        if op.kind == OpKind.DELETE:
            self.deletes.append(op)
        elif op.kind == OpKind.UPDATE:
            self.updates.append(op)
        else:
            self.creates.append(op)

    @property
    def is_empty(self) -> bool:
        return not (self.deletes or self.updates or self.creates)

    def lines_touched(self) -> set[str]:
        """Ids of lines with at least one planned operation."""
        return {
            op.line_id
            for op in (*self.deletes, *self.updates, *self.creates)
            if op.line_id
        }


@dataclass
class ReconcileResult:
    """Outcome of reconciling one ticket population for one contract."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    plan: ReconcilePlan | None = field(default=None, repr=False)

    @property
    def total_ops(self) -> int:
        return self.created + self.updated + self.deleted

    def merge(self, other: "ReconcileResult") -> None:
        self.created += other.created
        self.updated += other.updated
        self.deleted += other.deleted
        self.skipped += other.skipped
        self.errors.extend(other.errors)


@dataclass(frozen=True)
class IndexedTicket:
    """A ticket with the key it occupies and the parts of that key."""

    ticket: Ticket
    key: str
    contract_id: str
    line_key: str
    ymd: str
    derived: bool = False

    @property
    def date(self) -> date | None:
        return parse_date(self.ymd)


class TicketIndex:
    """Tickets of one contract indexed by idempotency key.

    Each key has one winner: a protected ticket beats a forecast-owned one,
    then the oldest ticket wins. Tickets without a stored key get one derived
    from their line key and target date.
    """

    def __init__(self, contract_id: str, tickets: list[Ticket], pipelines: PipelineConfig):
        self.contract_id = str(contract_id)
        self._pipelines = pipelines
        self.winners: dict[str, IndexedTicket] = {}
        self.losers: list[IndexedTicket] = []
        self.unkeyed: list[Ticket] = []

        slots: dict[str, list[IndexedTicket]] = {}
        for ticket in tickets:
            entry = self._index_entry(ticket)
            if entry is None:
                self.unkeyed.append(ticket)
                continue
            slots.setdefault(entry.key, []).append(entry)

        for key, entries in slots.items():
            ordered = sorted(entries, key=self._priority)
            self.winners[key] = ordered[0]
            self.losers.extend(ordered[1:])

        if self.unkeyed:
            logger.warning(
                "unkeyed_tickets",
                contract_id=self.contract_id,
                ticket_ids=[t.id for t in self.unkeyed],
            )

    def _priority(self, entry: IndexedTicket) -> tuple[int, Any]:
        forecast = 1 if self.is_forecast(entry.ticket) else 0
        return (forecast, entry.ticket.age_key())

    def _index_entry(self, ticket: Ticket) -> IndexedTicket | None:
        parsed = parse_key(ticket.key)
        if parsed.ok:
            return IndexedTicket(
                ticket=ticket,
                key=parsed.canonical,
                contract_id=parsed.contract_id,
                line_key=parsed.line_key,
                ymd=parsed.ymd,
            )

        # Legacy ticket: rebuild its key from the line key and target date
        target = format_date_iso(ticket.expected_date)
        deal_id = ticket.deal_id or self.contract_id
        if not ticket.line_key or not target:
            return None
        try:
            key = build_key(deal_id, ticket.line_key, target)
        except KeyBuildError:
            return None
        return IndexedTicket(
            ticket=ticket,
            key=key,
            contract_id=deal_id,
            line_key=ticket.line_key,
            ymd=target,
            derived=True,
        )

    def is_forecast(self, ticket: Ticket) -> bool:
        return self._pipelines.is_forecast_stage(ticket.stage)

    def is_own(self, entry: IndexedTicket) -> bool:
        """True when the ticket's key names this contract."""
        return entry.contract_id == self.contract_id

    def get(self, key: str) -> IndexedTicket | None:
        return self.winners.get(key)

    def latest_billing_dates(self) -> dict[str, date]:
        """Latest date holding a billing (non-forecast) ticket, per line key."""
        latest: dict[str, date] = {}
        for entry in self.winners.values():
            if self.is_forecast(entry.ticket) or not self.is_own(entry):
                continue
            ticket_date = entry.date
            if ticket_date is None:
                continue
            current = latest.get(entry.line_key)
            if current is None or ticket_date > current:
                latest[entry.line_key] = ticket_date
        return latest

    def __len__(self) -> int:
        return len(self.winners)


def key_drift_props(entry: IndexedTicket, contract_id: str, line_key: str, ymd: str) -> dict[str, str]:
    """Identity properties a ticket is missing or has wrong for its key."""
    ticket = entry.ticket
    patch: dict[str, str] = {}
    if ticket.key != entry.key:
        patch[TicketProps.TICKET_KEY] = entry.key
    if ticket.line_key != line_key:
        patch[TicketProps.LINE_KEY] = line_key
    if ticket.deal_id != str(contract_id):
        patch[TicketProps.DEAL_ID] = str(contract_id)
    if format_date_iso(ticket.expected_date) != ymd:
        patch[TicketProps.EXPECTED_DATE] = ymd
    return patch


def ticket_subject(contract: Contract, line: Line, ymd: str) -> str:
    deal_name = contract.name or f"deal {contract.id}"
    return f"{deal_name} | {line.name} | {ymd}"


def new_ticket_props(
    contract: Contract,
    line: Line,
    key: str,
    ymd: str,
    pipeline_id: str,
    stage_id: str,
) -> dict[str, str]:
    return {
        TicketProps.SUBJECT: ticket_subject(contract, line, ymd),
        TicketProps.PIPELINE: pipeline_id,
        TicketProps.STAGE: stage_id,
        TicketProps.TICKET_KEY: key,
        TicketProps.LINE_KEY: line.line_key,
        TicketProps.DEAL_ID: str(contract.id),
        TicketProps.EXPECTED_DATE: ymd,
    }


async def load_contract_tickets(client: CRMClient, contract_id: str) -> list[Ticket]:
    """Read every ticket associated with a contract."""
    ticket_ids = await client.get_associated_ids(ObjectType.DEALS, contract_id, ObjectType.TICKETS)
    if not ticket_ids:
        return []
    records = await client.batch_read(ObjectType.TICKETS, ticket_ids, TICKET_READ_PROPS)
    return [Ticket.from_record(r) for r in records]


def project_tickets(tickets: list[Ticket], plan: ReconcilePlan) -> list[Ticket]:
    """Tickets as they would stand once ``plan`` is applied.

    Used in dry-run, where nothing is written and a reload would not show the
    plan's effects. Planned creates get placeholder ids.
    """
    deleted = {op.ticket_id for op in plan.deletes if op.ticket_id}
    updates = {op.ticket_id: op.properties for op in plan.updates if op.ticket_id}
    projected = []
    for ticket in tickets:
        if ticket.id in deleted:
            continue
        if ticket.id in updates:
            ticket = Ticket(id=ticket.id, properties={**ticket.properties, **updates[ticket.id]})
        projected.append(ticket)
    for n, op in enumerate(plan.creates, start=1):
        projected.append(Ticket(id=f"planned-{n}", properties=dict(op.properties)))
    return projected


class PlanExecutor:
    """Applies a plan in order: deletes, then batched updates, then batched creates.

    A failed batch falls back to one request per record so that each failure is
    attributed to its own ticket and the rest still go through.
    """

    def __init__(
        self,
        client: CRMClient,
        *,
        schema: PropertySchemaCache | None = None,
        reporter: ErrorReporter | None = None,
        component: str = "reconciler",
    ):
        self._client = client
        self._schema = schema
        self._reporter = reporter
        self._logger = logger.bind(component=component)

    async def _writable(self, props: dict[str, Any]) -> dict[str, Any]:
        if self._schema is None:
            return clean_update_props(props)
        return await self._schema.writable(ObjectType.TICKETS, props)

    def _record_failure(self, result: ReconcileResult, op: TicketOp, error: Exception) -> None:
        message = f"{op.kind.value} {op.key}: {error}"
        result.errors.append(message)
        self._logger.error(
            "ticket_op_failed",
            kind=op.kind.value,
            key=op.key,
            ticket_id=op.ticket_id,
            line_id=op.line_id,
            status_code=getattr(error, "status_code", None),
            error=str(error),
        )
        if self._reporter is None:
            return
        if op.ticket_id:
            self._reporter.report_exception("ticket", op.ticket_id, error, f"ticket {op.kind.value}")
        elif op.line_id:
            self._reporter.report_exception("line_item", op.line_id, error, f"ticket {op.kind.value}")

    async def execute(
        self, contract_id: str, plan: ReconcilePlan, dry_run: bool = False
    ) -> ReconcileResult:
        result = ReconcileResult(skipped=plan.skipped, errors=list(plan.errors), plan=plan)

        if dry_run:
            for op in (*plan.deletes, *plan.updates, *plan.creates):
                self._logger.info(
                    "dry_run_ticket_op",
                    contract_id=contract_id,
                    kind=op.kind.value,
                    key=op.key,
                    ticket_id=op.ticket_id,
                    reason=op.reason,
                    properties=op.properties or None,
                )
            result.deleted = len(plan.deletes)
            result.updated = len(plan.updates)
            result.created = len(plan.creates)
            return result

        await self._run_deletes(plan.deletes, result)
        await self._run_updates(plan.updates, result)
        await self._run_creates(contract_id, plan.creates, result)
        return result

    async def _run_deletes(self, ops: list[TicketOp], result: ReconcileResult) -> None:
        for op in ops:
            if not op.ticket_id:
                continue
            try:
                await self._client.archive_object(ObjectType.TICKETS, op.ticket_id)
                result.deleted += 1
                self._logger.info("ticket_archived", ticket_id=op.ticket_id, key=op.key, reason=op.reason)
            except NotFoundError:
                self._logger.info("ticket_already_archived", ticket_id=op.ticket_id, key=op.key)
            except CRMError as e:
                self._record_failure(result, op, e)

    async def _run_updates(self, ops: list[TicketOp], result: ReconcileResult) -> None:
        prepared: list[tuple[TicketOp, dict[str, Any]]] = []
        for op in ops:
            props = await self._writable(op.properties)
            if op.ticket_id and props:
                prepared.append((op, props))
        if not prepared:
            return

        try:
            await self._client.batch_update(
                ObjectType.TICKETS, [(op.ticket_id or "", props) for op, props in prepared]
            )
            result.updated += len(prepared)
            for op, props in prepared:
                self._logger.info(
                    "ticket_updated", ticket_id=op.ticket_id, key=op.key, reason=op.reason, properties=sorted(props)
                )
            return
        except CRMError as e:
            self._logger.warning("batch_update_failed", count=len(prepared), error=str(e))

        for op, props in prepared:
            try:
                await self._client.update_object(ObjectType.TICKETS, op.ticket_id or "", props)
                result.updated += 1
                self._logger.info("ticket_updated", ticket_id=op.ticket_id, key=op.key, reason=op.reason)
            except CRMError as e:
                self._record_failure(result, op, e)

    async def _run_creates(
        self, contract_id: str, ops: list[TicketOp], result: ReconcileResult
    ) -> None:
        if not ops:
            return
        associations = [Association(to_id=str(contract_id), type_id=TICKET_TO_DEAL)]
        prepared = [(op, await self._writable(op.properties)) for op in ops]

        try:
            await self._client.batch_create(
                ObjectType.TICKETS, [(props, associations) for _, props in prepared]
            )
            result.created += len(prepared)
            for op, _ in prepared:
                self._logger.info("ticket_created", key=op.key, line_id=op.line_id)
            return
        except CRMError as e:
            self._logger.warning("batch_create_failed", count=len(prepared), error=str(e))

        # A partially applied batch leaves some keys already created
        existing = {t.key for t in await self._reload_keys(contract_id)}
        for op, props in prepared:
            if op.key in existing:
                result.created += 1
                continue
            try:
                await self._client.create_object(ObjectType.TICKETS, props, associations)
                result.created += 1
                self._logger.info("ticket_created", key=op.key, line_id=op.line_id)
            except CRMError as e:
                self._record_failure(result, op, e)

    async def _reload_keys(self, contract_id: str) -> list[Ticket]:
        try:
            return await load_contract_tickets(self._client, contract_id)
        except CRMError as e:
            self._logger.warning("ticket_reload_failed", contract_id=contract_id, error=str(e))
            return []
