"""CRM access: HTTP client, retry policy and property names."""

from billing_sync.crm.client import (
    TICKET_TO_DEAL,
    Association,
    AuthenticationError,
    CRMClient,
    CRMError,
    NotFoundError,
    RateLimitError,
)
from billing_sync.crm.properties import (
    DealProps,
    InvoiceProps,
    LineProps,
    ObjectType,
    PropertySchemaCache,
    TicketProps,
)
from billing_sync.crm.retry import RetryPolicy, call_with_retry, is_transient

__all__ = [
    "Association",
    "AuthenticationError",
    "CRMClient",
    "CRMError",
    "NotFoundError",
    "RateLimitError",
    "TICKET_TO_DEAL",
    "DealProps",
    "InvoiceProps",
    "LineProps",
    "ObjectType",
    "PropertySchemaCache",
    "TicketProps",
    "RetryPolicy",
    "call_with_retry",
    "is_transient",
]
