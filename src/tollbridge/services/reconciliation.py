"""Toll reconciliation: link toll transactions to concept invoice lines.

Transactions with status new are grouped per plate, date, VAT rate and
country. Each group is matched to the concept invoice of its plate and
week (the invoicing subsystem encodes both in the invoice reference) and
its exact sum is written onto one toll line of that invoice:

1. A blank toll placeholder carrying the group's country label
2. A populated toll line carrying the country label
3. Any blank toll placeholder for the date
4. A newly appended toll line, when creation is allowed

Candidate lines always show the group's date and VAT rate. The line update
and the transaction links are one atomic unit in the state store; when a
concurrent writer changed the chosen line first, the lines are reloaded and
the selection is repeated.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from ..errors import LineConflictError, MissingLineError, NotFoundError, ValidationError
from ..schemas import (
    country_label,
    date_label,
    is_blank_placeholder,
    is_open_toll_placeholder,
    is_toll_line_for,
    mentions_country,
    parse_date_label,
    parse_invoice_reference,
    toll_line_description,
    toll_status,
    week_bounds,
    week_id,
    week_of,
)
from ..state_store import TransactionStatus

if TYPE_CHECKING:
    from ..config import Config
    from ..state_store import (
        InvoiceLineRecord,
        InvoiceRecord,
        StateStore,
        TollTransactionRecord,
    )

logger = logging.getLogger(__name__)

NO_INVOICE_REASON = "no concept invoice for plate/week"
CONFLICT_REASON = "concurrent update"
MIXED_VAT_REASON = "mixed VAT rates"


def round_money(amount: Decimal, exponent: int = 2) -> Decimal:
    """Round once, half up, to the currency's minor unit."""
    return amount.quantize(Decimal(1).scaleb(-exponent), rounding=ROUND_HALF_UP)


def _wire_amount(amount: Decimal) -> float:
    return float(amount)


@dataclass
class UnmatchedGroup:
    license_plate: str
    transaction_date: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {
            "license_plate": self.license_plate,
            "transaction_date": self.transaction_date,
            "reason": self.reason,
        }


@dataclass
class ReconcileResult:
    """Result of one reconciliation run."""

    processed_transactions: int = 0
    matched_transactions: int = 0
    unmatched_groups: list[UnmatchedGroup] = field(default_factory=list)
    updated_invoice_lines: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processedTransactions": self.processed_transactions,
            "matchedTransactions": self.matched_transactions,
            "unmatchedGroups": [group.to_dict() for group in self.unmatched_groups],
            "updatedInvoiceLines": self.updated_invoice_lines,
        }


@dataclass
class TransactionGroup:
    """Transactions that end up on one invoice line."""

    license_plate: str
    day: date
    country: str | None
    transactions: list[TollTransactionRecord]

    @property
    def ids(self) -> list[str]:
        return [tx.id for tx in self.transactions]

    @property
    def vat_rates(self) -> set[Decimal]:
        return {tx.vat_rate for tx in self.transactions}

    @property
    def vat_rate(self) -> Decimal:
        """The group's single VAT rate.

        Raises:
            ValidationError: Transactions carry more than one rate
        """
        rates = self.vat_rates
        if len(rates) != 1:
            raise ValidationError(
                f"{MIXED_VAT_REASON}: "
                + ", ".join(f"{rate}%" for rate in sorted(rates))
                + ". Group transactions with different VAT rates separately."
            )
        return next(iter(rates))

    def exact_sum(self) -> Decimal:
        return sum((tx.amount for tx in self.transactions), Decimal(0))


@dataclass
class MergeOutcome:
    invoice_line_id: str
    total: Decimal
    vat_rate: Decimal
    created: bool


def group_transactions(transactions: Iterable[TollTransactionRecord]) -> list[TransactionGroup]:
    """Group by plate, date, VAT rate and country, keeping first-seen order."""
    groups: dict[tuple[str, str, Decimal, str], TransactionGroup] = {}
    for tx in transactions:
        country = (tx.country or "").upper()
        key = (tx.license_plate.upper(), tx.transaction_date, tx.vat_rate, country)
        if key not in groups:
            groups[key] = TransactionGroup(
                license_plate=tx.license_plate.upper(),
                day=tx.day,
                country=country or None,
                transactions=[],
            )
        groups[key].transactions.append(tx)
    return list(groups.values())


def dominant_country(transactions: Sequence[TollTransactionRecord]) -> str | None:
    """Most common country of a group; None when no row names one."""
    counts = Counter((tx.country or "").upper() for tx in transactions)
    if not counts:
        return None
    country, _ = counts.most_common(1)[0]
    return country or None


def select_target_line(
    lines: Sequence[InvoiceLineRecord],
    day: date,
    vat_rate: Decimal,
    country: str | None,
) -> InvoiceLineRecord | None:
    """Pick the invoice line a group's total should go onto, if any.

    Only toll lines for `day` with `vat_rate` qualify. With a known country
    the order is: blank with the country label, populated with the country
    label, any blank. Without a country: blank, then populated.
    """
    candidates = [
        line
        for line in lines
        if is_toll_line_for(line.description, day) and line.vat_rate == vat_rate
    ]
    blanks = [line for line in candidates if is_blank_placeholder(line.quantity, line.unit_price)]
    populated = [line for line in candidates if line not in blanks]

    if country_label(country):
        for line in blanks:
            if mentions_country(line.description, country):
                return line
        for line in populated:
            if mentions_country(line.description, country):
                return line
        return blanks[0] if blanks else None

    if blanks:
        return blanks[0]
    return populated[0] if populated else None


class TollReconciler:
    """Links toll transactions to concept invoice lines.

    Usage:
        reconciler = TollReconciler(store, config)
        result = reconciler.reconcile_new()
    """

    def __init__(self, store: StateStore, config: Config) -> None:
        self.store = store
        self.config = config
        self.exponent = config.reconciliation.currency_exponent
        self.max_retries = config.reconciliation.max_conflict_retries

    # Invoice lookup

    def index_concept_invoices(
        self, invoices: Iterable[InvoiceRecord] | None = None
    ) -> dict[tuple[str, int, int], InvoiceRecord]:
        """Concept invoices keyed by (plate, week-year, week).

        When several concept invoices share a key, the most recent one wins.
        """
        if invoices is None:
            invoices = self.store.get_concept_invoices()
        index: dict[tuple[str, int, int], InvoiceRecord] = {}
        for invoice in invoices:
            ref = parse_invoice_reference(invoice.reference)
            if ref is None:
                continue
            index.setdefault((ref.plate, ref.year, ref.week), invoice)
        return index

    @staticmethod
    def _invoice_key(plate: str, day: date) -> tuple[str, int, int]:
        week, year = week_of(day)
        return plate.upper(), year, week

    # Merge step

    def merge_group(
        self,
        invoice_id: str,
        group: TransactionGroup,
        create_missing: bool,
        require_new: bool = True,
    ) -> MergeOutcome:
        """Write a group's rounded sum onto one line of an invoice.

        Raises:
            ValidationError: Mixed VAT rates in the group
            MissingLineError: No line qualifies and creation is not allowed
            LineConflictError: Still conflicting after all retries
            NotFoundError: Invoice vanished
        """
        vat_rate = group.vat_rate

        for attempt in range(1, self.max_retries + 1):
            lines = self.store.get_invoice_lines(invoice_id)
            target = select_target_line(lines, group.day, vat_rate, group.country)
            if target is None and not create_missing:
                raise MissingLineError(
                    f"no blank toll line for {date_label(group.day)}, "
                    f"country {group.country or 'UNKNOWN'}, VAT {vat_rate}%"
                )

            total = round_money(self._line_amount(group, target), self.exponent)
            description = None if target else toll_line_description(group.day, group.country)
            try:
                line_id = self.store.apply_group_match(
                    invoice_id,
                    group.ids,
                    total,
                    vat_rate,
                    line=target,
                    description=description,
                    require_new=require_new,
                )
            except LineConflictError as e:
                logger.warning(
                    f"Conflict merging {group.license_plate} {group.day} "
                    f"(attempt {attempt}/{self.max_retries}): {e}"
                )
                if attempt == self.max_retries:
                    raise
                continue

            return MergeOutcome(
                invoice_line_id=line_id, total=total, vat_rate=vat_rate, created=target is None
            )

        raise LineConflictError(CONFLICT_REASON)

    def _line_amount(self, group: TransactionGroup, target: InvoiceLineRecord | None) -> Decimal:
        """Exact amount for the target line, including rows already linked to it."""
        amount = group.exact_sum()
        if target is not None and not is_blank_placeholder(target.quantity, target.unit_price):
            in_group = set(group.ids)
            amount += sum(
                (
                    tx.amount
                    for tx in self.store.get_transactions_for_line(target.id)
                    if tx.id not in in_group
                ),
                Decimal(0),
            )
        return amount

    # Automatic run

    def reconcile_new(self) -> ReconcileResult:
        """Match every new transaction group to its concept invoice."""
        transactions = self.store.get_new_transactions(self.config.reconciliation.scan_limit)
        result = ReconcileResult(processed_transactions=len(transactions))
        if not transactions:
            return result

        index = self.index_concept_invoices()
        create_missing = self.config.reconciliation.create_missing_lines

        for group in group_transactions(transactions):
            invoice = index.get(self._invoice_key(group.license_plate, group.day))
            if invoice is None:
                result.unmatched_groups.append(self._unmatched(group, NO_INVOICE_REASON))
                continue

            try:
                self.merge_group(invoice.id, group, create_missing=create_missing)
            except ValidationError as e:
                result.unmatched_groups.append(self._unmatched(group, str(e)))
                continue
            except (LineConflictError, NotFoundError):
                result.unmatched_groups.append(self._unmatched(group, CONFLICT_REASON))
                continue

            result.matched_transactions += len(group.transactions)
            result.updated_invoice_lines += 1

        logger.info(
            f"Reconciled {result.matched_transactions}/{result.processed_transactions} "
            f"transactions onto {result.updated_invoice_lines} lines, "
            f"{len(result.unmatched_groups)} groups unmatched"
        )
        return result

    @staticmethod
    def _unmatched(group: TransactionGroup, reason: str) -> UnmatchedGroup:
        return UnmatchedGroup(
            license_plate=group.license_plate,
            transaction_date=group.day.isoformat(),
            reason=reason,
        )

    # Per-invoice run

    def add_toll_to_invoice(self, invoice_id: str) -> dict[str, Any]:
        """Pull every toll transaction of an invoice's plate and week onto it.

        Transactions linked to lines of other invoices (or to lines that no
        longer exist) are unlinked first. Missing toll lines are created.

        Raises:
            NotFoundError: Unknown invoice
            ValidationError: Invoice is not a concept or has no week/plate reference
        """
        invoice = self.store.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found")
        if not invoice.is_concept:
            raise ValidationError("Only concept invoices can receive toll")
        ref = parse_invoice_reference(invoice.reference)
        if ref is None:
            raise ValidationError("Invoice reference carries no week/plate")

        start, end = week_bounds(ref.week, ref.year)
        transactions = [
            tx
            for tx in self.store.get_transactions_for_plate(ref.plate, start, end)
            if tx.status != TransactionStatus.IGNORED
        ]
        if not transactions:
            return {
                "matchedTransactions": 0,
                "updatedInvoiceLines": 0,
                "message": (
                    f"No toll transactions found for week {ref.week} of {ref.year} "
                    f"and plate {ref.plate}"
                ),
            }

        line_ids = {tx.invoice_line_id for tx in transactions if tx.invoice_line_id}
        linked_lines = self.store.get_invoice_lines_by_ids(line_ids)

        to_link: list[TollTransactionRecord] = []
        to_unlink: list[str] = []
        for tx in transactions:
            if tx.invoice_line_id is None:
                to_link.append(tx)
                continue
            line = linked_lines.get(tx.invoice_line_id)
            if line is None or line.invoice_id != invoice_id:
                to_unlink.append(tx.id)
                to_link.append(tx)

        if to_unlink:
            logger.info(f"Unlinking {len(to_unlink)} transactions from other invoices")
            self.store.unlink_transactions(to_unlink)

        if not to_link:
            return {
                "matchedTransactions": 0,
                "updatedInvoiceLines": 0,
                "message": "All toll transactions are already linked to this invoice",
            }

        matched = 0
        updated_lines = 0
        for group in group_transactions(to_link):
            self.merge_group(invoice_id, group, create_missing=True)
            matched += len(group.transactions)
            updated_lines += 1

        return {
            "matchedTransactions": matched,
            "updatedInvoiceLines": updated_lines,
            "message": f"{matched} toll transaction(s) linked to {updated_lines} invoice line(s)",
        }

    # Read models

    def toll_status_for(self, invoice_id: str) -> str:
        open_lines = sum(
            1
            for line in self.store.get_invoice_lines(invoice_id)
            if is_open_toll_placeholder(line.description, line.quantity, line.unit_price)
        )
        return toll_status(open_lines)

    def list_concept_invoices(self, needs_toll: bool = True, limit: int = 300) -> list[dict[str, Any]]:
        """Concept invoices with their count of open toll placeholders."""
        open_counts = self.store.count_open_toll_lines()
        invoices = []
        for invoice in self.store.get_concept_invoices(limit=min(limit, 500)):
            open_lines = open_counts.get(invoice.id, 0)
            if needs_toll and open_lines == 0:
                continue
            invoices.append(
                {
                    "id": invoice.id,
                    "reference": invoice.reference,
                    "invoice_date": invoice.invoice_date,
                    "status": invoice.status,
                    "open_toll_lines": open_lines,
                    "toll_status": toll_status(open_lines),
                }
            )
        return invoices

    def build_dashboard(self, days_back: int = 120, today: date | None = None) -> dict[str, Any]:
        """Overview of matched, unmatched and missing toll per plate and week."""
        today = today or date.today()
        transactions = self.store.get_transactions_since(today - timedelta(days=days_back))

        concept = self.store.get_concept_invoices()
        index = self.index_concept_invoices(concept)
        lines_by_invoice = self.store.get_lines_for_invoices(invoice.id for invoice in concept)

        matched = self._matched_rows(transactions)
        unmatched = self._unmatched_rows(transactions, index, lines_by_invoice)
        missing = self._missing_toll(concept, lines_by_invoice, transactions)

        weeks: dict[tuple[str, str], dict[str, Any]] = {}

        def week_entry(week: str, plate: str) -> dict[str, Any]:
            return weeks.setdefault(
                (week, plate),
                {
                    "week_id": week,
                    "license_plate": plate,
                    "matched_amount": Decimal(0),
                    "unmatched_amount": Decimal(0),
                    "missing_toll_count": 0,
                },
            )

        for row in matched:
            day = date.fromisoformat(row["transaction_date"])
            week_entry(week_id(day), row["license_plate"])["matched_amount"] += row["amount"]
        for row in unmatched:
            week_entry(row["week_id"], row["license_plate"])["unmatched_amount"] += row["amount"]
        for row in missing:
            week_entry(row["week_id"], row["license_plate"])["missing_toll_count"] += 1

        overview = []
        for entry in weeks.values():
            entry["ok"] = entry["unmatched_amount"] == 0 and entry["missing_toll_count"] == 0
            entry["matched_amount"] = _wire_amount(round_money(entry["matched_amount"], self.exponent))
            entry["unmatched_amount"] = _wire_amount(
                round_money(entry["unmatched_amount"], self.exponent)
            )
            overview.append(entry)
        overview.sort(key=lambda e: e["license_plate"])
        overview.sort(key=lambda e: e["week_id"], reverse=True)

        for row in matched + unmatched:
            row["amount"] = _wire_amount(round_money(row["amount"], self.exponent))

        return {
            "matched": matched,
            "unmatched": unmatched,
            "missingToll": missing,
            "weekOverview": overview,
        }

    def _matched_rows(self, transactions: Sequence[TollTransactionRecord]) -> list[dict[str, Any]]:
        sums: dict[tuple[str, str, str], Decimal] = {}
        for tx in transactions:
            if tx.status != TransactionStatus.MATCHED or not tx.invoice_line_id:
                continue
            key = (tx.invoice_line_id, tx.license_plate, tx.transaction_date)
            sums[key] = sums.get(key, Decimal(0)) + tx.amount

        lines = self.store.get_invoice_lines_by_ids(line_id for line_id, _, _ in sums)
        invoices = self.store.get_invoices(line.invoice_id for line in lines.values())

        rows = []
        for (line_id, plate, day), amount in sums.items():
            line = lines.get(line_id)
            invoice = invoices.get(line.invoice_id) if line else None
            rows.append(
                {
                    "license_plate": plate,
                    "transaction_date": day,
                    "amount": amount,
                    "invoice_line_id": line_id,
                    "invoice_id": line.invoice_id if line else None,
                    "invoice_reference": invoice.reference if invoice else None,
                }
            )
        rows.sort(key=lambda r: r["transaction_date"], reverse=True)
        return rows

    def _unmatched_rows(
        self,
        transactions: Sequence[TollTransactionRecord],
        index: dict[tuple[str, int, int], InvoiceRecord],
        lines_by_invoice: dict[str, list[InvoiceLineRecord]],
    ) -> list[dict[str, Any]]:
        groups: dict[tuple[str, str], dict[str, Any]] = {}
        for tx in transactions:
            if tx.status != TransactionStatus.NEW:
                continue
            key = (tx.license_plate, tx.transaction_date)
            entry = groups.setdefault(
                key,
                {
                    "license_plate": tx.license_plate,
                    "transaction_date": tx.transaction_date,
                    "amount": Decimal(0),
                    "count": 0,
                    "txIds": [],
                },
            )
            entry["amount"] += tx.amount
            entry["count"] += 1
            entry["txIds"].append(tx.id)

        rows = []
        for entry in groups.values():
            day = date.fromisoformat(entry["transaction_date"])
            entry["week_id"] = week_id(day)
            invoice = index.get(self._invoice_key(entry["license_plate"], day))
            if invoice is None:
                entry["reason"] = (
                    "No concept invoice for this plate/week. Expected a reference like "
                    '"Week WW - YYYY (PLATE)".'
                )
            else:
                has_line = any(
                    is_toll_line_for(line.description, day)
                    for line in lines_by_invoice.get(invoice.id, [])
                )
                if has_line:
                    entry["reason"] = (
                        "Concept invoice found, but these transactions are not linked yet. "
                        "Use a manual match."
                    )
                else:
                    entry["reason"] = (
                        f"Concept invoice found, but it has no toll line for {date_label(day)}. "
                        "A manual match can create one."
                    )
                entry["suggested_invoice_id"] = invoice.id
                entry["suggested_invoice_reference"] = invoice.reference
            rows.append(entry)
        rows.sort(key=lambda r: r["transaction_date"], reverse=True)
        return rows

    def _missing_toll(
        self,
        concept: Sequence[InvoiceRecord],
        lines_by_invoice: dict[str, list[InvoiceLineRecord]],
        transactions: Sequence[TollTransactionRecord],
    ) -> list[dict[str, Any]]:
        """Open toll placeholders that no matched transaction fills."""
        filled = {
            tx.invoice_line_id
            for tx in transactions
            if tx.status == TransactionStatus.MATCHED and tx.invoice_line_id
        }
        rows: list[tuple[str, dict[str, Any]]] = []
        for invoice in concept:
            ref = parse_invoice_reference(invoice.reference)
            if ref is None:
                continue
            for line in lines_by_invoice.get(invoice.id, []):
                if not is_open_toll_placeholder(line.description, line.quantity, line.unit_price):
                    continue
                if line.id in filled:
                    continue
                day = parse_date_label(line.description)
                row = {
                    "invoice_id": invoice.id,
                    "invoice_reference": invoice.reference,
                    "invoice_line_id": line.id,
                    "dateLabel": date_label(day) if day else f"Week {ref.week} - {ref.year}",
                    "license_plate": ref.plate,
                    "week_id": week_id(day) if day else f"{ref.year}-{ref.week:02d}",
                }
                rows.append((day.isoformat() if day else "", row))
        rows.sort(key=lambda pair: pair[0], reverse=True)
        return [row for _, row in rows]
