"""Billing Sync - recurring billing schedules and CRM ticket reconciliation."""

__version__ = "0.1.0"

from billing_sync.config import configure_logging, get_settings
from billing_sync.crm import CRMClient, CRMError
from billing_sync.invoices import InvoiceGuard, InvoiceValidation
from billing_sync.keys import KeyBuildError, build_key, key_matches_context, parse_key
from billing_sync.models import Contract, Line, Ticket
from billing_sync.processor import BatchSummary, ContractProcessor
from billing_sync.reconcile import (
    BillingTicketReconciler,
    ForecastTicketReconciler,
    ReconcileResult,
)
from billing_sync.schedule import (
    BillingConfig,
    ScheduleCounters,
    compute_counters,
    materialize_dates,
    resolve_billing_config,
)

__all__ = [
    # Version
    "__version__",
    # Schedule
    "BillingConfig",
    "ScheduleCounters",
    "resolve_billing_config",
    "materialize_dates",
    "compute_counters",
    # Keys
    "KeyBuildError",
    "build_key",
    "parse_key",
    "key_matches_context",
    # Records
    "Contract",
    "Line",
    "Ticket",
    # Reconcilers
    "BillingTicketReconciler",
    "ForecastTicketReconciler",
    "ReconcileResult",
    "InvoiceGuard",
    "InvoiceValidation",
    # Pipeline
    "ContractProcessor",
    "BatchSummary",
    # CRM
    "CRMClient",
    "CRMError",
    # Config
    "get_settings",
    "configure_logging",
]
