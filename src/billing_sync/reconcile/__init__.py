"""Ticket reconcilers for the billing and forecast populations."""

from billing_sync.reconcile.base import (
    OpKind,
    PlanExecutor,
    ReconcilePlan,
    ReconcileResult,
    TicketIndex,
    TicketOp,
    load_contract_tickets,
    project_tickets,
)
from billing_sync.reconcile.billing import BillingTicketReconciler
from billing_sync.reconcile.forecast import ForecastTicketReconciler

__all__ = [
    "OpKind",
    "PlanExecutor",
    "ReconcilePlan",
    "ReconcileResult",
    "TicketIndex",
    "TicketOp",
    "load_contract_tickets",
    "project_tickets",
    "BillingTicketReconciler",
    "ForecastTicketReconciler",
]
