"""Invoice anti-inheritance guard.

A cloned line inherits its source's ``invoice_id``. The invoice itself stores
the key of the billing event it was issued for, so a claim is only accepted
when that key equals the one recomputed for this contract, line and period.
"""

from dataclasses import dataclass
from typing import Any

import structlog

from billing_sync.crm.client import CRMClient, CRMError, NotFoundError
from billing_sync.crm.properties import InvoiceProps, ObjectType
from billing_sync.keys import KeyBuildError, build_key, match_key_context

logger = structlog.get_logger(__name__)

_EMPTY_IDS = frozenset({"", "null", "undefined", "none"})


@dataclass(frozen=True)
class InvoiceValidation:
    valid: bool
    reason: str
    expected_key: str | None = None
    found_key: str | None = None


class InvoiceGuard:
    """Checks that an invoice referenced by a line was issued for that line."""

    def __init__(self, client: CRMClient):
        self._client = client
        self._logger = logger.bind(component="invoice_guard")

    async def validate(
        self,
        contract_id: str,
        line_key: str,
        invoice_id: Any,
        period_ymd: str,
    ) -> InvoiceValidation:
        """Validate an invoice claim. Fails closed on any lookup error."""
        invoice = str(invoice_id or "").strip()
        if invoice.lower() in _EMPTY_IDS:
            return InvoiceValidation(valid=False, reason="no_invoice_id")

        try:
            expected_key = build_key(contract_id, line_key, period_ymd)
        except KeyBuildError as e:
            self._logger.warning(
                "invoice_key_context_invalid",
                contract_id=contract_id,
                line_key=line_key,
                invoice_id=invoice,
                error=str(e),
            )
            return InvoiceValidation(valid=False, reason="invalid_key_context")

        try:
            record = await self._client.get_object(
                ObjectType.INVOICES, invoice, [InvoiceProps.INVOICE_KEY]
            )
        except NotFoundError:
            self._logger.warning("invoice_not_found", invoice_id=invoice, expected_key=expected_key)
            return InvoiceValidation(
                valid=False, reason="invoice_not_found", expected_key=expected_key
            )
        except CRMError as e:
            self._logger.error(
                "invoice_validation_failed",
                invoice_id=invoice,
                status_code=e.status_code,
                error=str(e),
            )
            return InvoiceValidation(
                valid=False, reason="validation_error", expected_key=expected_key
            )

        found_key = str((record.get("properties") or {}).get(InvoiceProps.INVOICE_KEY) or "").strip()
        match = match_key_context(found_key, contract_id=contract_id, line_key=line_key)
        if match.ok and match.parsed is not None and match.parsed.canonical == expected_key:
            return InvoiceValidation(
                valid=True, reason="key_match", expected_key=expected_key, found_key=found_key
            )

        self._logger.warning(
            "invoice_key_mismatch",
            invoice_id=invoice,
            expected_key=expected_key,
            found_key=found_key or None,
            mismatch=match.reason or "mismatch_period",
        )
        return InvoiceValidation(
            valid=False,
            reason="invoice_id_inherited_or_mismatch",
            expected_key=expected_key,
            found_key=found_key,
        )
