"""Tests for the forecast ticket reconciler."""

from datetime import date

import pytest

from billing_sync.crm.properties import ObjectType
from billing_sync.keys import build_key
from billing_sync.models import Contract, Line, Ticket
from billing_sync.reconcile import ForecastTicketReconciler
from conftest import (
    AUTO_FORECAST_95,
    AUTO_PIPELINE,
    MANUAL_FORECAST_25,
    MANUAL_FORECAST_95,
    MANUAL_INVOICED,
    MANUAL_NEW,
    MANUAL_PIPELINE,
)

TODAY = date(2026, 3, 1)
DEAL_ID = "100"
LINE_KEY = "100:200:aaaaaa"


def make_contract(**props):
    base = {"dealname": "Acme", "dealstage": "closedwon", "billing_active": "true"}
    base.update(props)
    return Contract(id=DEAL_ID, properties=base)


def make_line(**props):
    base = {
        "name": "Support plan",
        "line_item_key": LINE_KEY,
        "recurringbillingfrequency": "monthly",
        "hs_recurring_billing_start_date": "2026-03-14",
        "hs_recurring_billing_number_of_payments": "3",
    }
    base.update(props)
    return Line(id="200", properties=base)


def add_ticket(crm, ticket_id, ymd, stage=MANUAL_FORECAST_95, line_key=LINE_KEY, **extra):
    props = {
        "of_ticket_key": build_key(DEAL_ID, line_key, ymd),
        "of_line_item_key": line_key,
        "of_deal_id": DEAL_ID,
        "expected_billing_date": ymd,
        "hs_pipeline": MANUAL_PIPELINE,
        "hs_pipeline_stage": stage,
        "createdate": "2026-01-01T00:00:00Z",
    }
    props.update(extra)
    crm.add(ObjectType.TICKETS, ticket_id, **props)
    crm.associate(ObjectType.DEALS, DEAL_ID, ObjectType.TICKETS, ticket_id)


def load(crm):
    return [Ticket.from_record(r) for r in crm.tickets()]


@pytest.fixture
def reconciler(fake_crm, pipelines):
    """A forecast reconciler over the fake CRM."""
    return ForecastTicketReconciler(
        fake_crm,
        pipelines,
        ceiling=24,
        max_slots=48,
        default_start_to_today=True,
        lost_stage="closedlost",
    )


class TestForecastPlan:
    """Tests for the forecast diff."""

    def test_creates_one_ticket_per_future_event(self, reconciler):
        """Test a fixed-term line in a won deal."""
        plan = reconciler.plan(make_contract(), [make_line()], [], TODAY)

        dates = sorted(op.properties["expected_billing_date"] for op in plan.creates)
        assert dates == ["2026-03-14", "2026-04-14", "2026-05-14"]
        assert {op.properties["hs_pipeline_stage"] for op in plan.creates} == {MANUAL_FORECAST_95}

    def test_stage_follows_deal_bucket(self, reconciler):
        """Test that an unlisted deal stage falls into the default bucket."""
        plan = reconciler.plan(make_contract(dealstage="appointmentscheduled"), [make_line()], [], TODAY)
        assert {op.properties["hs_pipeline_stage"] for op in plan.creates} == {MANUAL_FORECAST_25}

    def test_automated_line_uses_automated_forecast_stage(self, reconciler):
        """Test the forecast pipeline for automated billing."""
        plan = reconciler.plan(make_contract(), [make_line(billing_automated="true")], [], TODAY)
        assert {op.properties["hs_pipeline"] for op in plan.creates} == {AUTO_PIPELINE}
        assert {op.properties["hs_pipeline_stage"] for op in plan.creates} == {AUTO_FORECAST_95}

    def test_past_dates_are_not_forecast(self, reconciler):
        """Test that only dates from today onward are desired."""
        line = make_line(**{"hs_recurring_billing_start_date": "2026-01-14"})
        plan = reconciler.plan(make_contract(), [line], [], TODAY)
        assert sorted(op.properties["expected_billing_date"] for op in plan.creates) == ["2026-03-14"]

    def test_protected_collision_is_skipped(self, reconciler, fake_crm):
        """Test that a billing ticket holding a forecast key is neither updated nor deleted."""
        add_ticket(fake_crm, "1", "2026-03-14", stage=MANUAL_NEW)
        plan = reconciler.plan(make_contract(), [make_line()], load(fake_crm), TODAY)

        assert plan.skipped == 1
        assert len(plan.creates) == 2
        assert not plan.updates
        assert not plan.deletes

    def test_forecast_duplicate_of_protected_ticket_is_deleted(self, reconciler, fake_crm):
        """Test that the protected ticket wins the key and the forecast copy goes."""
        add_ticket(fake_crm, "1", "2026-03-14", stage=MANUAL_NEW, createdate="2026-02-20T00:00:00Z")
        add_ticket(fake_crm, "2", "2026-03-14")
        plan = reconciler.plan(make_contract(), [make_line()], load(fake_crm), TODAY)

        assert [(op.ticket_id, op.reason) for op in plan.deletes] == [("2", "duplicate")]
        assert plan.skipped == 1

    def test_bucket_change_moves_existing_tickets(self, reconciler, fake_crm):
        """Test that a deal moving to won moves forecast tickets to the 95 stage."""
        add_ticket(fake_crm, "1", "2026-03-14", stage=MANUAL_FORECAST_25)
        plan = reconciler.plan(make_contract(), [make_line()], load(fake_crm), TODAY)

        assert len(plan.updates) == 1
        assert plan.updates[0].properties == {"hs_pipeline_stage": MANUAL_FORECAST_95}

    def test_unscheduled_forecast_ticket_is_deleted(self, reconciler, fake_crm):
        """Test that a forecast ticket beyond the shortened term is removed."""
        add_ticket(fake_crm, "1", "2026-06-14")
        plan = reconciler.plan(make_contract(), [make_line()], load(fake_crm), TODAY)
        assert [(op.ticket_id, op.reason) for op in plan.deletes] == [("1", "not_scheduled")]

    def test_paused_contract_deletes_only_forecast_tickets(self, reconciler, fake_crm):
        """Test that pause removes forecast tickets and leaves billing ones."""
        add_ticket(fake_crm, "1", "2026-03-14")
        add_ticket(fake_crm, "2", "2026-04-14", stage=MANUAL_NEW)
        add_ticket(fake_crm, "3", "2026-02-14", stage=MANUAL_INVOICED)
        plan = reconciler.plan(make_contract(billing_paused="true"), [make_line()], load(fake_crm), TODAY)

        assert [(op.ticket_id, op.reason) for op in plan.deletes] == [("1", "paused")]
        assert not plan.creates

    def test_orphan_billing_ticket_is_never_deleted(self, reconciler, fake_crm):
        """Test that ownership is decided by stage, not by key shape."""
        add_ticket(fake_crm, "1", "2026-03-14", stage=MANUAL_NEW, line_key="100:999:bbbbbb")
        add_ticket(fake_crm, "2", "2026-03-14", line_key="100:999:bbbbbb")
        plan = reconciler.plan(make_contract(), [make_line()], load(fake_crm), TODAY)
        assert [op.ticket_id for op in plan.deletes] == ["2"]

    def test_foreign_contract_ticket_is_left_alone(self, reconciler, fake_crm):
        """Test that a forecast ticket keyed to another deal is not deleted."""
        add_ticket(
            fake_crm,
            "1",
            "2026-03-14",
            of_ticket_key=build_key("555", "555:1:cccccc", "2026-03-14"),
        )
        plan = reconciler.plan(make_contract(), [make_line()], load(fake_crm), TODAY)
        assert not plan.deletes


class TestForecastReconcile:
    """Tests for reconcile against the fake CRM."""

    @pytest.mark.asyncio
    async def test_stamps_changed_lines(self, reconciler, fake_crm):
        """Test that lines with forecast changes get a generation timestamp."""
        fake_crm.add(ObjectType.LINE_ITEMS, "200")

        result = await reconciler.reconcile(make_contract(), [make_line()], TODAY)

        assert result.created == 3
        assert not result.errors
        assert fake_crm.props(ObjectType.LINE_ITEMS, "200")["forecast_last_generated_at"]

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, reconciler, fake_crm):
        """Test idempotence of the forecast population."""
        fake_crm.add(ObjectType.LINE_ITEMS, "200")
        await reconciler.reconcile(make_contract(), [make_line()], TODAY)
        writes = len(fake_crm.write_calls())

        second = await reconciler.reconcile(make_contract(), [make_line()], TODAY)

        assert second.total_ops == 0
        assert len(fake_crm.write_calls()) == writes

    @pytest.mark.asyncio
    async def test_dry_run_does_not_stamp(self, reconciler, fake_crm):
        """Test that dry-run writes neither tickets nor line stamps."""
        fake_crm.add(ObjectType.LINE_ITEMS, "200")
        result = await reconciler.reconcile(make_contract(), [make_line()], TODAY, dry_run=True)
        assert result.created == 3
        assert fake_crm.write_calls() == []

    @pytest.mark.asyncio
    async def test_stamp_failure_is_reported(self, reconciler, fake_crm):
        """Test that a missing line record surfaces as an error, not an exception."""
        result = await reconciler.reconcile(make_contract(), [make_line()], TODAY)
        assert result.created == 3
        assert len(result.errors) == 1
        assert "forecast stamp failed" in result.errors[0]
