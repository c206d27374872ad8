"""Batch import of parsed toll rows.

Rows are hashed once per batch, then stored in fixed-size chunks. A chunk
that trips the import_hash uniqueness constraint is retried row by row so
that already-imported rows are skipped instead of failing the upload.
Chunks run strictly one after another.

After at least one new row, the reconciliation matcher runs once for the
whole import. Its failure never undoes the import.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..errors import ImportAbortedError, ValidationError
from ..parsers import parse_toll_file
from ..schemas import ColumnMapping, RawTollRow, compute_import_hash, resolve_time_inclusion
from ..state_store import InsertStatus, NewTollTransaction
from .reconciliation import ReconcileResult

if TYPE_CHECKING:
    from ..config import Config
    from ..state_store import StateStore
    from .reconciliation import TollReconciler

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    """Outcome of one import batch."""

    parsed_rows: int = 0
    inserted_rows: int = 0
    skipped_duplicates: int = 0
    dropped_rows: int = 0
    warnings: list[str] = field(default_factory=list)
    reconcile: ReconcileResult | None = None
    reconcile_error: str | None = None
    aborted: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        reconcile = self.reconcile or ReconcileResult()
        data: dict[str, Any] = {
            "parsedRows": self.parsed_rows,
            "insertedRows": self.inserted_rows,
            "skippedDuplicates": self.skipped_duplicates,
            "droppedRows": self.dropped_rows,
            "reconcile": reconcile.to_dict(),
            "warnings": list(self.warnings),
        }
        if self.reconcile_error:
            data["reconcileError"] = self.reconcile_error
        if self.aborted:
            data["aborted"] = True
            data["error"] = self.error
        return data


class TollImporter:
    """Stores parsed toll rows idempotently and triggers reconciliation.

    Usage:
        importer = TollImporter(store, config, reconciler)
        result = importer.import_file(payload, mapping)
    """

    def __init__(
        self,
        store: StateStore,
        config: Config,
        reconciler: TollReconciler | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.reconciler = reconciler

    def import_file(self, payload: bytes, mapping: ColumnMapping) -> ImportResult:
        """Parse a spreadsheet payload and import its rows.

        Raises:
            MappingError: Mapped columns are missing from the file
            ValidationError: Nothing could be parsed with this mapping
            ImportAbortedError: A row failed for a reason other than a duplicate
        """
        parsed = parse_toll_file(payload, mapping)
        if not parsed.rows:
            raise ValidationError("No rows parsed; check the column mapping")

        decision = resolve_time_inclusion(
            parsed.rows,
            sentinel=self.config.imports.time_sentinel,
            threshold=self.config.imports.time_ratio_threshold,
        )
        logger.info(
            f"Parsed {len(parsed.rows)} rows ({parsed.dropped_count} dropped), "
            f"{decision.timed_rows} with time; include_time={decision.include_time}"
        )

        warnings = list(decision.warnings)
        if parsed.dropped_count:
            warnings.append(
                f"{parsed.dropped_count} row(s) were skipped because plate, date or amount "
                "could not be read."
            )

        result = self.import_rows(parsed.rows, decision.include_time, warnings=warnings)
        result.dropped_rows = parsed.dropped_count
        return result

    def prepare(
        self,
        rows: Sequence[RawTollRow],
        include_time: bool,
        use_row_index: bool = False,
    ) -> list[NewTollTransaction]:
        """Hash rows and fill defaults for VAT rate and time."""
        sentinel = self.config.imports.time_sentinel
        prepared = []
        for index, row in enumerate(rows):
            time = row.transaction_time or sentinel
            import_hash = compute_import_hash(
                row.license_plate,
                row.transaction_date,
                time,
                row.amount,
                country=row.country,
                location=row.location,
                include_time=include_time,
                tie_breaker=index if use_row_index else None,
            )
            prepared.append(
                NewTollTransaction(
                    import_hash=import_hash,
                    license_plate=row.license_plate,
                    transaction_date=row.date_iso,
                    transaction_time=time,
                    amount=row.amount,
                    vat_rate=(
                        row.vat_rate
                        if row.vat_rate is not None
                        else self.config.imports.default_vat_rate
                    ),
                    country=row.country,
                    location=row.location,
                )
            )
        return prepared

    def import_rows(
        self,
        rows: Sequence[RawTollRow],
        include_time: bool,
        warnings: Sequence[str] = (),
        use_row_index: bool = False,
    ) -> ImportResult:
        """Import already-parsed rows.

        Args:
            rows: Parsed rows of one upload
            include_time: Batch-level decision from resolve_time_inclusion()
            warnings: Warnings collected so far, passed through to the result
            use_row_index: Make otherwise identical rows unique by their
                position in the file. Only for exports that legitimately
                repeat identical charges; re-importing the same data in a
                different row order then inserts duplicates.

        Raises:
            ImportAbortedError: A row failed for a reason other than a duplicate.
                The error carries the partial result.
        """
        result = ImportResult(parsed_rows=len(rows), warnings=list(warnings))
        prepared = self.prepare(rows, include_time, use_row_index=use_row_index)

        chunk_size = self.config.imports.chunk_size
        for start in range(0, len(prepared), chunk_size):
            chunk = prepared[start : start + chunk_size]
            try:
                result.inserted_rows += self.store.insert_transactions(chunk)
            except sqlite3.IntegrityError as e:
                logger.debug(f"Chunk at row {start} hit a constraint ({e}); inserting row by row")
                self._insert_rows_individually(chunk, result)

        logger.info(
            f"Import finished: {result.inserted_rows} inserted, "
            f"{result.skipped_duplicates} already imported"
        )

        if result.inserted_rows > 0:
            self._reconcile(result)
        return result

    def _insert_rows_individually(
        self, chunk: Sequence[NewTollTransaction], result: ImportResult
    ) -> None:
        for row in chunk:
            outcome = self.store.insert_transaction(row)
            if outcome.status == InsertStatus.INSERTED:
                result.inserted_rows += 1
            elif outcome.status == InsertStatus.SKIPPED_DUPLICATE:
                result.skipped_duplicates += 1
            else:
                logger.error(
                    f"Insert failed for plate={row.license_plate} date={row.transaction_date} "
                    f"amount={row.amount} hash={row.import_hash}: {outcome.cause}"
                )
                result.aborted = True
                result.error = outcome.cause
                raise ImportAbortedError(
                    f"Import aborted after {result.inserted_rows} inserted rows: {outcome.cause}",
                    partial=result,
                )

    def _reconcile(self, result: ImportResult) -> None:
        if self.reconciler is None:
            result.reconcile = ReconcileResult()
            return
        try:
            result.reconcile = self.reconciler.reconcile_new()
        except Exception as e:
            logger.exception("Reconciliation after import failed; import is kept")
            result.reconcile = ReconcileResult()
            result.reconcile_error = str(e)
