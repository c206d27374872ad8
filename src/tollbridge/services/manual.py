"""Manual overrides: explicit status changes and operator-chosen matches."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from ..errors import NotFoundError, ValidationError
from ..state_store import TransactionStatus
from .reconciliation import TollReconciler, TransactionGroup, dominant_country

if TYPE_CHECKING:
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

VALID_STATUSES = tuple(status.value for status in TransactionStatus)


@dataclass
class ManualMatchResult:
    invoice_line_id: str
    total: Decimal
    vat_rate: Decimal
    invoice_reference: str | None
    toll_status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "invoiceLineId": self.invoice_line_id,
            "total": float(self.total),
            "vat_rate": float(self.vat_rate),
            "invoice_reference": self.invoice_reference,
            "toll_status": self.toll_status,
        }


def _clean_ids(ids: Any) -> list[str]:
    if not isinstance(ids, (list, tuple)):
        return []
    return [str(i) for i in ids if str(i).strip()]


def set_status(store: StateStore, ids: Sequence[str], status: str) -> int:
    """Move transactions to new, matched or ignored.

    new and ignored clear the invoice link. matched only sticks to rows that
    are already linked to an invoice line; other rows are left alone and not
    counted.

    Returns:
        Number of rows updated

    Raises:
        ValidationError: Empty ids or unknown status
    """
    ids = _clean_ids(ids)
    if not ids:
        raise ValidationError("No ids provided")
    if status not in VALID_STATUSES:
        raise ValidationError("Invalid status")

    updated = store.set_status(ids, TransactionStatus(status))
    logger.info(f"Set status {status} on {updated}/{len(ids)} transactions")
    return updated


def match_manual(
    store: StateStore,
    reconciler: TollReconciler,
    ids: Sequence[str],
    invoice_id: str,
    create_if_missing: bool = True,
) -> ManualMatchResult:
    """Force a group of transactions onto a chosen concept invoice.

    All preconditions are checked before anything is written, so a rejected
    request leaves no trace.

    Raises:
        ValidationError: Empty ids, missing invoice id, non-concept invoice,
            group spanning plates/dates, mixed VAT rates, or no target line
            while create_if_missing is False
        NotFoundError: Invoice or transactions not found
    """
    ids = _clean_ids(ids)
    if not ids:
        raise ValidationError("No ids provided")
    if not invoice_id:
        raise ValidationError("No invoiceId provided")

    invoice = store.get_invoice(invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice not found")
    if not invoice.is_concept:
        raise ValidationError("Only concept invoices can be matched")

    transactions = store.get_transactions(ids)
    if not transactions:
        raise NotFoundError("No transactions found")

    plates = {tx.license_plate.upper() for tx in transactions}
    dates = {tx.transaction_date for tx in transactions}
    if len(plates) != 1 or len(dates) != 1:
        raise ValidationError(
            "Transactions must be from the same license_plate and transaction_date"
        )

    group = TransactionGroup(
        license_plate=plates.pop(),
        day=transactions[0].day,
        country=dominant_country(transactions),
        transactions=transactions,
    )
    if len(group.vat_rates) != 1:
        raise ValidationError(
            "Transactions must have the same VAT rate. "
            "Group transactions with different VAT rates separately."
        )

    outcome = reconciler.merge_group(
        invoice_id, group, create_missing=create_if_missing, require_new=False
    )
    logger.info(
        f"Manually matched {len(transactions)} transactions of {group.license_plate} "
        f"{group.day} onto line {outcome.invoice_line_id} ({outcome.total})"
    )

    return ManualMatchResult(
        invoice_line_id=outcome.invoice_line_id,
        total=outcome.total,
        vat_rate=outcome.vat_rate,
        invoice_reference=invoice.reference,
        toll_status=reconciler.toll_status_for(invoice_id),
    )
