"""Tests for the CRM error reporter."""

from datetime import UTC, datetime

import pytest

from billing_sync.crm.client import CRMError
from billing_sync.crm.properties import ObjectType
from billing_sync.errors import ErrorReporter, compact_lines, is_actionable
from billing_sync.keys import KeyBuildError


def fixed_clock():
    return datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def reporter(fake_crm):
    """An error reporter with a fixed clock."""
    return ErrorReporter(fake_crm, clock=fixed_clock)


class TestCompactLines:
    """Tests for compact_lines."""

    def test_keeps_newest_lines(self):
        """Test the line limit."""
        lines = [f"line {i}" for i in range(40)]
        assert compact_lines(lines, max_lines=3) == "line 37\nline 38\nline 39"

    def test_character_limit_drops_partial_line(self):
        """Test that truncation never leaves a partial line at the top."""
        lines = ["a" * 10, "b" * 10, "c" * 10]
        assert compact_lines(lines, max_chars=15) == "c" * 10


class TestIsActionable:
    """Tests for error classification."""

    def test_key_errors_are_actionable(self):
        """Test that key problems are reported."""
        assert is_actionable(KeyBuildError("line key missing"))

    def test_client_errors_are_actionable(self):
        """Test non-transient 4xx."""
        assert is_actionable(CRMError("bad", status_code=400))

    def test_transient_errors_are_not(self):
        """Test 429 and 5xx."""
        assert not is_actionable(CRMError("slow", status_code=429))
        assert not is_actionable(CRMError("down", status_code=503))
        assert not is_actionable(CRMError("network"))
        assert not is_actionable(RuntimeError("bug"))


class TestErrorReporter:
    """Tests for queueing and flushing."""

    def test_consecutive_duplicates_are_dropped(self, reporter):
        """Test de-duplication within a run."""
        reporter.report("line_item", "200", "boom")
        reporter.report("line_item", "200", "boom")
        reporter.report("line_item", "200", "other")
        assert reporter.pending[("line_item", "200")] == [
            "2026-03-01T12:00:00+00:00 ERROR: boom",
            "2026-03-01T12:00:00+00:00 ERROR: other",
        ]

    def test_transient_exception_is_not_queued(self, reporter):
        """Test that retryable failures never land on the record."""
        assert not reporter.report_exception("ticket", "1", CRMError("x", status_code=502), "ticket update")
        assert reporter.pending == {}

    @pytest.mark.asyncio
    async def test_flush_appends_to_existing_value(self, reporter, fake_crm):
        """Test that flush merges with what is already on the record."""
        fake_crm.add(ObjectType.LINE_ITEMS, "200", billing_error="old entry")
        reporter.report("line_item", "200", "start date missing", level="warning")

        written = await reporter.flush()

        assert written == 1
        assert fake_crm.props(ObjectType.LINE_ITEMS, "200")["billing_error"] == (
            "old entry\n2026-03-01T12:00:00+00:00 WARNING: start date missing"
        )
        assert reporter.pending == {}

    @pytest.mark.asyncio
    async def test_flush_writes_ticket_error_property(self, reporter, fake_crm):
        """Test the ticket target property."""
        fake_crm.add(ObjectType.TICKETS, "9")
        reporter.report_exception("ticket", "9", CRMError("invalid stage", status_code=400), "ticket update")

        await reporter.flush()

        assert "ticket update: invalid stage" in fake_crm.props(ObjectType.TICKETS, "9")["of_billing_error"]

    @pytest.mark.asyncio
    async def test_flush_failure_is_swallowed(self, reporter):
        """Test that a missing record does not raise."""
        reporter.report("line_item", "404", "boom")
        assert await reporter.flush() == 0

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, fake_crm):
        """Test that dry-run only logs."""
        reporter = ErrorReporter(fake_crm, dry_run=True, clock=fixed_clock)
        fake_crm.add(ObjectType.LINE_ITEMS, "200")
        reporter.report("line_item", "200", "boom")

        assert await reporter.flush() == 0
        assert fake_crm.calls == []
