"""Tests for the per-contract pipeline and batch runner."""

from datetime import date

import pytest

from billing_sync.config import get_settings
from billing_sync.crm.properties import ObjectType
from billing_sync.keys import build_key
from billing_sync.processor import ContractProcessor
from conftest import MANUAL_FORECAST_95, MANUAL_NEW

TODAY = date(2026, 3, 1)
LINE_KEY = "100:200:aaaaaa"


def add_deal(crm, deal_id="100", **props):
    base = {"dealname": "Acme", "dealstage": "closedwon", "billing_active": "true"}
    base.update(props)
    crm.add(ObjectType.DEALS, deal_id, **base)


def add_line(crm, line_id="200", deal_id="100", **props):
    base = {
        "name": "Support plan",
        "line_item_key": LINE_KEY,
        "recurringbillingfrequency": "monthly",
        "hs_recurring_billing_start_date": "2026-01-14",
    }
    base.update(props)
    crm.add(ObjectType.LINE_ITEMS, line_id, **base)
    crm.associate(ObjectType.DEALS, deal_id, ObjectType.LINE_ITEMS, line_id)


@pytest.fixture
def processor(fake_crm, pipelines):
    """A processor over the fake CRM without start-delay cooldown."""
    settings = get_settings().model_copy(update={"start_delay_cooldown_seconds": 0, "dry_run": False})
    return ContractProcessor(fake_crm, pipelines, settings=settings)


class TestProcessContract:
    """Tests for process_contract."""

    @pytest.mark.asyncio
    async def test_monthly_contract_end_to_end(self, processor, fake_crm):
        """Test line write-back, billing and forecast tickets and the contract summary."""
        add_deal(fake_crm)
        add_line(fake_crm)

        outcome = await processor.process_contract("100", TODAY)

        assert outcome.ok, outcome.all_errors()
        line = fake_crm.props(ObjectType.LINE_ITEMS, "200")
        assert line["billing_total_count"] == "48"
        assert line["billing_emitted_count"] == "2"
        assert line["billing_remaining_count"] == "46"
        assert line["billing_next_date"] == "2026-04-14"
        assert line["billing_last_date"] == "2026-02-14"
        assert line["last_ticketed_date"] == "2026-03-14"
        assert line["billing_date_48"] == "2029-12-14"
        assert line["forecast_last_generated_at"]

        assert outcome.billing.created == 1
        assert outcome.forecast.created == 21
        assert outcome.forecast.skipped == 1
        stages = {}
        for ticket in fake_crm.tickets():
            stages.setdefault(ticket["properties"]["hs_pipeline_stage"], []).append(
                ticket["properties"]["expected_billing_date"]
            )
        assert stages[MANUAL_NEW] == ["2026-03-14"]
        assert len(stages[MANUAL_FORECAST_95]) == 21

        deal = fake_crm.props(ObjectType.DEALS, "100")
        assert deal["billing_next_date"] == "2026-04-14"
        assert deal["billing_last_date"] == "2026-02-14"
        assert deal["billing_frequency_summary"] == "monthly"

    @pytest.mark.asyncio
    async def test_second_run_writes_nothing(self, processor, fake_crm):
        """Test that an unchanged contract produces no writes on the next run."""
        add_deal(fake_crm)
        add_line(fake_crm)
        await processor.process_contract("100", TODAY)
        writes = len(fake_crm.write_calls())

        outcome = await processor.process_contract("100", TODAY)

        assert outcome.ok
        assert outcome.billing.total_ops == 0
        assert outcome.forecast.total_ops == 0
        assert outcome.lines_updated == 0
        assert len(fake_crm.write_calls()) == writes

    @pytest.mark.asyncio
    async def test_mirror_contract_is_skipped(self, processor, fake_crm):
        """Test that mirror contracts are never processed."""
        add_deal(fake_crm, is_mirror="true")
        add_line(fake_crm)

        outcome = await processor.process_contract("100", TODAY)

        assert outcome.skipped
        assert fake_crm.write_calls() == []

    @pytest.mark.asyncio
    async def test_load_failure_is_an_outcome(self, processor):
        """Test that a missing contract is reported, not raised."""
        outcome = await processor.process_contract("999", TODAY)
        assert not outcome.ok
        assert "load failed" in outcome.errors[0]

    @pytest.mark.asyncio
    async def test_cloned_line_is_rekeyed_and_reset(self, processor, fake_crm):
        """Test clone detection on a line copied from another record."""
        add_deal(fake_crm)
        add_line(fake_crm, line_id="201", invoice_id="777", last_billing_period="2026-02-14")

        await processor.process_contract("100", TODAY)

        line = fake_crm.props(ObjectType.LINE_ITEMS, "201")
        assert line["line_item_key"].startswith("100:201:")
        assert line["invoice_id"] == ""
        assert line["last_billing_period"] == ""
        assert "identity key reissued" in line["billing_error"]
        ticket_keys = {t["properties"]["of_line_item_key"] for t in fake_crm.tickets()}
        assert ticket_keys == {line["line_item_key"]}

    @pytest.mark.asyncio
    async def test_missing_line_key_gets_issued(self, processor, fake_crm):
        """Test that a line without identity key is given one before tickets exist."""
        add_deal(fake_crm)
        add_line(fake_crm, line_item_key="")

        outcome = await processor.process_contract("100", TODAY)

        assert outcome.ok
        key = fake_crm.props(ObjectType.LINE_ITEMS, "200")["line_item_key"]
        assert key.startswith("100:200:")
        assert all(t["properties"]["of_line_item_key"] == key for t in fake_crm.tickets())

    @pytest.mark.asyncio
    async def test_inherited_invoice_is_cleared(self, processor, fake_crm):
        """Test that an invoice issued for another line is unlinked and reported."""
        add_deal(fake_crm)
        add_line(fake_crm, invoice_id="777", last_billing_period="2026-02-14")
        fake_crm.add(
            ObjectType.INVOICES, "777", of_invoice_key=build_key("100", "100:199:ffffff", "2026-02-14")
        )

        await processor.process_contract("100", TODAY)

        line = fake_crm.props(ObjectType.LINE_ITEMS, "200")
        assert line["invoice_id"] == ""
        assert "invoice_id_inherited_or_mismatch" in line["billing_error"]

    @pytest.mark.asyncio
    async def test_valid_invoice_is_kept(self, processor, fake_crm):
        """Test that a matching invoice claim is left alone."""
        add_deal(fake_crm)
        add_line(fake_crm, invoice_id="777", last_billing_period="2026-02-14")
        fake_crm.add(ObjectType.INVOICES, "777", of_invoice_key=build_key("100", LINE_KEY, "2026-02-14"))

        await processor.process_contract("100", TODAY)

        assert fake_crm.props(ObjectType.LINE_ITEMS, "200")["invoice_id"] == "777"

    @pytest.mark.asyncio
    async def test_unwritable_line_key_holds_the_line(self, processor, fake_crm):
        """Test that no tickets are created under a key that cannot be persisted."""
        add_deal(fake_crm)
        add_line(fake_crm, line_item_key="")
        fake_crm.schemas[ObjectType.LINE_ITEMS] = ["name", "billing_next_date"]

        outcome = await processor.process_contract("100", TODAY)

        assert not outcome.ok
        assert "line 200" in outcome.errors[0]
        assert fake_crm.tickets() == []

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, fake_crm, pipelines):
        """Test that dry-run plans everything and writes nothing."""
        add_deal(fake_crm)
        add_line(fake_crm, hs_recurring_billing_start_date="", hs_billing_start_delay_days="10")
        settings = get_settings().model_copy(update={"start_delay_cooldown_seconds": 0})
        processor = ContractProcessor(fake_crm, pipelines, settings=settings, dry_run=True)

        outcome = await processor.process_contract("100", TODAY)

        assert outcome.billing.created >= 1
        assert fake_crm.write_calls() == []

    @pytest.mark.asyncio
    async def test_dry_run_counts_match_a_real_run(self, fake_crm, pipelines):
        """Test that forecast sees the billing tickets a dry-run only planned."""
        add_deal(fake_crm)
        add_line(fake_crm)
        processor = ContractProcessor(fake_crm, pipelines, settings=get_settings(), dry_run=True)

        outcome = await processor.process_contract("100", TODAY)

        assert outcome.billing.created == 1
        assert outcome.forecast.created == 21
        assert outcome.forecast.skipped == 1
        assert fake_crm.write_calls() == []

    @pytest.mark.asyncio
    async def test_old_error_is_cleared_once_fixed(self, processor, fake_crm):
        """Test that a stale error note goes away when the line syncs cleanly."""
        add_deal(fake_crm)
        add_line(
            fake_crm,
            billing_error="2026-02-01T06:00:00+00:00 ERROR: no billing start date set; nothing scheduled",
        )

        outcome = await processor.process_contract("100", TODAY)

        assert outcome.ok, outcome.all_errors()
        assert fake_crm.props(ObjectType.LINE_ITEMS, "200")["billing_error"] == ""

    @pytest.mark.asyncio
    async def test_error_reported_this_run_is_kept(self, processor, fake_crm):
        """Test that a line with a new problem keeps its notes."""
        add_deal(fake_crm)
        add_line(
            fake_crm,
            billing_error="2026-02-01T06:00:00+00:00 ERROR: earlier problem",
            invoice_id="777",
            last_billing_period="2026-02-14",
        )

        await processor.process_contract("100", TODAY)

        error = fake_crm.props(ObjectType.LINE_ITEMS, "200")["billing_error"]
        assert "earlier problem" in error
        assert "invoice 777 rejected" in error


class TestProcessAll:
    """Tests for the batch runner."""

    @pytest.mark.asyncio
    async def test_selects_eligible_contracts(self, processor, fake_crm):
        """Test that inactive and mirror contracts are not selected."""
        add_deal(fake_crm, "100")
        add_deal(fake_crm, "101", is_mirror="true")
        add_deal(fake_crm, "102", billing_active="false")
        add_line(fake_crm)

        summary = await processor.process_all(TODAY)

        assert summary.processed == 1
        assert summary.succeeded == 1
        assert summary.created == 22

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self, processor, fake_crm):
        """Test error isolation between contracts."""
        add_deal(fake_crm, "100")
        add_line(fake_crm)

        summary = await processor.process_all(TODAY, contract_ids=["999", "100"])

        assert summary.processed == 2
        assert summary.failed == 1
        assert summary.succeeded == 1
        assert summary.errors[0].startswith("deal 999:")
