"""Tests for the batch importer."""

import sqlite3
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from conftest import EXPORT_HEADERS, build_xlsx
from tollbridge.errors import ImportAbortedError, ValidationError
from tollbridge.schemas import TIME_EXCLUDED_WARNING, ColumnMapping, RawTollRow
from tollbridge.services import TollImporter, TollReconciler
from tollbridge.state_store import InsertOutcome, InsertStatus, TransactionStatus


def _raw(amount: str = "10.00", time: str | None = None, row_number: int = 0) -> RawTollRow:
    return RawTollRow(
        license_plate="12-ABC-3",
        transaction_date=date(2024, 3, 4),
        amount=Decimal(amount),
        transaction_time=time,
        country="BE",
        row_number=row_number,
    )


@pytest.fixture
def importer(store, config):
    return TollImporter(store, config, TollReconciler(store, config))


class TestImportFile:
    """End-to-end import of an uploaded file."""

    def test_first_import_inserts_every_row(self, importer, sample_xlsx, export_mapping):
        result = importer.import_file(sample_xlsx, export_mapping)

        assert result.parsed_rows == 3
        assert result.inserted_rows == 3
        assert result.skipped_duplicates == 0
        assert result.dropped_rows == 0
        assert result.warnings == []
        # No concept invoices exist: both plate/date groups are reported
        assert result.reconcile.processed_transactions == 3
        assert len(result.reconcile.unmatched_groups) == 2

    def test_reimport_is_idempotent(self, importer, store, sample_xlsx, export_mapping):
        """Importing the same file twice inserts nothing the second time."""
        importer.import_file(sample_xlsx, export_mapping)

        second = importer.import_file(sample_xlsx, export_mapping)

        assert second.inserted_rows == 0
        assert second.skipped_duplicates == 3
        assert store.count_transactions_by_status()["new"] == 3

    def test_reimport_skips_reconcile(self, store, config, sample_xlsx, export_mapping):
        reconciler = MagicMock()
        TollImporter(store, config).import_file(sample_xlsx, export_mapping)

        result = TollImporter(store, config, reconciler).import_file(sample_xlsx, export_mapping)

        reconciler.reconcile_new.assert_not_called()
        assert result.to_dict()["reconcile"]["processedTransactions"] == 0

    def test_import_reconciles_onto_concept_invoice(
        self, importer, store, week_invoice, sample_xlsx, export_mapping
    ):
        result = importer.import_file(sample_xlsx, export_mapping)

        assert result.reconcile.matched_transactions == 2
        assert result.reconcile.updated_invoice_lines == 1
        line = store.get_invoice_line(week_invoice["be_line"])
        assert line.total == Decimal("15.70")

    def test_dropped_rows_reported(self, importer, export_mapping):
        payload = build_xlsx(
            EXPORT_HEADERS,
            [
                ["12-ABC-3", date(2024, 3, 4), "08:15", 12.5, 21, "BE", None],
                ["12-ABC-3", date(2024, 3, 4), "08:20", "?", 21, "BE", None],
            ],
        )
        result = importer.import_file(payload, export_mapping)

        assert result.inserted_rows == 1
        assert result.dropped_rows == 1
        assert any("1 row(s) were skipped" in w for w in result.warnings)

    def test_nothing_parsed(self, importer, export_mapping):
        payload = build_xlsx(EXPORT_HEADERS, [["", None, None, None, None, None, None]])
        with pytest.raises(ValidationError, match="No rows parsed"):
            importer.import_file(payload, export_mapping)

    def test_time_excluded_merges_identical_charges(self, importer, store):
        """Without times, two identical same-day charges are one transaction."""
        payload = build_xlsx(
            ["Kenteken", "Datum", "Bedrag"],
            [["12-ABC-3", date(2024, 3, 4), 4.5], ["12-ABC-3", date(2024, 3, 4), 4.5]],
        )
        mapping = ColumnMapping(license_plate="Kenteken", transaction_date="Datum", amount="Bedrag")

        result = importer.import_file(payload, mapping)

        assert result.inserted_rows == 1
        assert result.skipped_duplicates == 1
        assert TIME_EXCLUDED_WARNING in result.warnings
        stored = store.get_new_transactions(10)[0]
        assert stored.transaction_time == "00:00"
        assert stored.vat_rate == Decimal("21")


class TestImportRows:
    """Chunking, fallback and abort behaviour."""

    def test_chunk_fallback_skips_duplicates_only(self, store, config):
        config.imports.chunk_size = 2
        importer = TollImporter(store, config)
        importer.import_rows([_raw("1.00")], include_time=False)

        result = importer.import_rows(
            [_raw("2.00"), _raw("1.00"), _raw("3.00"), _raw("4.00")], include_time=False
        )

        assert result.inserted_rows == 3
        assert result.skipped_duplicates == 1
        assert store.count_transactions_by_status()["new"] == 4

    def test_row_index_keeps_identical_rows(self, store, config):
        importer = TollImporter(store, config)
        result = importer.import_rows([_raw(), _raw()], include_time=False, use_row_index=True)
        assert result.inserted_rows == 2

    def test_time_included_distinguishes_rows(self, store, config):
        importer = TollImporter(store, config)
        result = importer.import_rows(
            [_raw(time="08:00"), _raw(time="09:00")], include_time=True
        )
        assert result.inserted_rows == 2

    def test_blank_time_hashes_like_midnight(self, store, config):
        """A blank time cell and an explicit 00:00 are the same charge."""
        importer = TollImporter(store, config)
        importer.import_rows(
            [_raw("1.00", time="08:00"), _raw("2.00", time="09:00"), _raw("3.00", time="00:00")],
            include_time=True,
        )

        result = importer.import_rows(
            [_raw("1.00", time="08:00"), _raw("2.00", time="09:00"), _raw("3.00", time=None)],
            include_time=True,
        )

        assert result.inserted_rows == 0
        assert result.skipped_duplicates == 3
        assert store.count_transactions_by_status()["new"] == 3

    def test_non_duplicate_failure_aborts(self, store, config, monkeypatch):
        """A row failing for another reason stops the import; earlier rows stay."""
        importer = TollImporter(store, config, MagicMock())
        real_insert = store.insert_transaction
        calls = []

        def chunk_fails(rows):
            raise sqlite3.IntegrityError("CHECK constraint failed")

        def second_row_fails(row):
            calls.append(row)
            if len(calls) == 2:
                return InsertOutcome(InsertStatus.FAILED, "disk I/O error")
            return real_insert(row)

        monkeypatch.setattr(store, "insert_transactions", chunk_fails)
        monkeypatch.setattr(store, "insert_transaction", second_row_fails)

        with pytest.raises(ImportAbortedError) as exc_info:
            importer.import_rows([_raw("1"), _raw("2"), _raw("3")], include_time=False)

        partial = exc_info.value.partial
        assert partial.inserted_rows == 1
        assert partial.aborted is True
        assert partial.error == "disk I/O error"
        assert partial.to_dict()["aborted"] is True
        # The third row was never attempted and reconcile never ran
        assert len(calls) == 2
        importer.reconciler.reconcile_new.assert_not_called()
        assert store.count_transactions_by_status()["new"] == 1

    def test_reconcile_failure_keeps_import(self, store, config):
        reconciler = MagicMock()
        reconciler.reconcile_new.side_effect = RuntimeError("invoice service down")
        importer = TollImporter(store, config, reconciler)

        result = importer.import_rows([_raw()], include_time=False)

        assert result.inserted_rows == 1
        assert result.reconcile_error == "invoice service down"
        assert result.to_dict()["reconcileError"] == "invoice service down"
        assert result.to_dict()["reconcile"]["matchedTransactions"] == 0
        assert store.get_new_transactions(10)[0].status == TransactionStatus.NEW

    def test_reconcile_runs_once_per_import(self, store, config):
        config.imports.chunk_size = 1
        reconciler = MagicMock()
        importer = TollImporter(store, config, reconciler)

        importer.import_rows([_raw("1"), _raw("2"), _raw("3")], include_time=False)

        reconciler.reconcile_new.assert_called_once()


class TestImportResult:
    def test_to_dict_shape(self):
        from tollbridge.services import ImportResult

        data = ImportResult(parsed_rows=2, inserted_rows=1, skipped_duplicates=1).to_dict()

        assert data == {
            "parsedRows": 2,
            "insertedRows": 1,
            "skippedDuplicates": 1,
            "droppedRows": 0,
            "reconcile": {
                "processedTransactions": 0,
                "matchedTransactions": 0,
                "unmatchedGroups": [],
                "updatedInvoiceLines": 0,
            },
            "warnings": [],
        }
