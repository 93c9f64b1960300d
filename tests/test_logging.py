"""Tests for logging configuration."""

import logging
from datetime import date

import structlog

from billing_sync.config.logging import bind_run_context, configure_logging, redact_secrets


def test_redact_secrets():
    """Test that credential fields are masked and others kept."""
    event = redact_secrets(None, "info", {"event": "crm_request", "token": "pat-123", "deal": "100"})
    assert event == {"event": "crm_request", "token": "***", "deal": "100"}


def test_bind_run_context():
    """Test run-wide context fields."""
    run_id = bind_run_context(date(2026, 3, 1), dry_run=True, run_id="abc")
    try:
        assert run_id == "abc"
        assert structlog.contextvars.get_contextvars() == {
            "run_id": "abc",
            "run_date": "2026-03-01",
            "dry_run": True,
        }
    finally:
        structlog.contextvars.clear_contextvars()


def test_generated_run_id():
    """Test that a run id is generated when none is given."""
    run_id = bind_run_context(date(2026, 3, 1), dry_run=False)
    structlog.contextvars.clear_contextvars()
    assert len(run_id) == 12


def test_http_client_logs_are_quieted():
    """Test that per-request HTTP logs stay below INFO."""
    configure_logging(level="INFO", format="json")
    assert logging.getLogger("httpx").level == logging.WARNING
