"""Tests for state store."""

import sqlite3
from datetime import date
from decimal import Decimal

import pytest

from conftest import make_transaction, seed_transactions
from tollbridge.errors import LineConflictError, NotFoundError
from tollbridge.state_store import (
    InsertStatus,
    InvoiceStatus,
    StateStore,
    TransactionStatus,
    is_import_hash_violation,
)


class TestStateStore:
    """Tests for SQLite state store."""

    def test_init_creates_db(self, temp_db):
        """Initializing creates database file."""
        StateStore(temp_db)
        assert temp_db.exists()

    def test_init_creates_tables(self, store):
        """All required tables are created."""
        conn = store._get_connection()
        try:
            tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            table_names = [t[0] for t in tables]

            assert "invoices" in table_names
            assert "invoice_lines" in table_names
            assert "toll_transactions" in table_names
            assert "migrations" in table_names
        finally:
            conn.close()

    def test_migrations_create_indexes(self, store):
        conn = store._get_connection()
        try:
            indexes = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")
            }
        finally:
            conn.close()
        assert "idx_toll_transactions_status" in indexes

    def test_reopen_is_idempotent(self, temp_db):
        """Opening an existing database twice keeps its data."""
        store = StateStore(temp_db)
        seed_transactions(store, make_transaction("h1"))
        reopened = StateStore(temp_db)
        assert reopened.get_transaction_by_hash("h1") is not None


class TestTransactionInserts:
    """Tests for toll transaction inserts."""

    def test_insert_and_read_back(self, store):
        (tx_id,) = seed_transactions(store, make_transaction("h1", amount="12.345"))

        (record,) = store.get_transactions([tx_id])
        assert record.import_hash == "h1"
        assert record.amount == Decimal("12.345")
        assert record.vat_rate == Decimal("21")
        assert record.status == TransactionStatus.NEW
        assert record.invoice_line_id is None
        assert record.day == date(2024, 3, 4)

    def test_chunk_with_duplicate_persists_nothing(self, store):
        """A chunk hitting the unique constraint rolls back completely."""
        seed_transactions(store, make_transaction("dup"))

        with pytest.raises(sqlite3.IntegrityError) as exc_info:
            store.insert_transactions([make_transaction("fresh"), make_transaction("dup")])

        assert is_import_hash_violation(exc_info.value)
        assert store.get_transaction_by_hash("fresh") is None

    def test_single_insert_classifies_duplicate(self, store):
        assert store.insert_transaction(make_transaction("h1")).status == InsertStatus.INSERTED

        outcome = store.insert_transaction(make_transaction("h1"))
        assert outcome.status == InsertStatus.SKIPPED_DUPLICATE

    def test_get_transactions_ignores_unknown_ids(self, store):
        (tx_id,) = seed_transactions(store, make_transaction("h1"))
        records = store.get_transactions([tx_id, "nope", tx_id])
        assert [r.id for r in records] == [tx_id]

    def test_count_by_status(self, store):
        ids = seed_transactions(store, make_transaction("a"), make_transaction("b"))
        store.set_status([ids[0]], TransactionStatus.IGNORED)

        counts = store.count_transactions_by_status()
        assert counts == {"new": 1, "matched": 0, "ignored": 1}


class TestStatusConstraint:
    """matched if and only if linked to an invoice line."""

    def test_matched_without_link_rejected_by_schema(self, store):
        (tx_id,) = seed_transactions(store, make_transaction("h1"))
        conn = store._get_connection()
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    "UPDATE toll_transactions SET status = 'matched' WHERE id = ?", (tx_id,)
                )
        finally:
            conn.close()

    def test_link_without_matched_rejected_by_schema(self, store):
        (tx_id,) = seed_transactions(store, make_transaction("h1"))
        conn = store._get_connection()
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    "UPDATE toll_transactions SET invoice_line_id = 'x' WHERE id = ?", (tx_id,)
                )
        finally:
            conn.close()

    def test_set_status_matched_skips_unlinked(self, store):
        (tx_id,) = seed_transactions(store, make_transaction("h1"))
        assert store.set_status([tx_id], TransactionStatus.MATCHED) == 0
        assert store.get_transactions([tx_id])[0].status == TransactionStatus.NEW

    def test_set_status_clears_link(self, store, week_invoice):
        (tx_id,) = seed_transactions(store, make_transaction("h1"))
        line = store.get_invoice_line(week_invoice["be_line"])
        store.apply_group_match(
            week_invoice["invoice_id"], [tx_id], Decimal("10.00"), Decimal("21"), line=line
        )

        assert store.set_status([tx_id], TransactionStatus.IGNORED) == 1

        record = store.get_transactions([tx_id])[0]
        assert record.status == TransactionStatus.IGNORED
        assert record.invoice_line_id is None


class TestInvoices:
    def test_create_and_list_concepts(self, store):
        older = store.create_invoice("week 9 - 2024 (P)", invoice_date=date(2024, 3, 1))
        newer = store.create_invoice("week 10 - 2024 (P)", invoice_date=date(2024, 3, 8))
        sent = store.create_invoice("week 8 - 2024 (P)", status=InvoiceStatus.SENT.value)

        concept_ids = [invoice.id for invoice in store.get_concept_invoices()]
        assert concept_ids == [newer, older]
        assert sent not in concept_ids
        assert store.get_invoice(sent).is_concept is False

    def test_lines_keep_insertion_order(self, store, week_invoice):
        lines = store.get_invoice_lines(week_invoice["invoice_id"])
        assert [line.id for line in lines] == [
            week_invoice["work_line"],
            week_invoice["be_line"],
            week_invoice["plain_line"],
        ]
        assert [line.position for line in lines] == [1, 2, 3]
        assert lines[0].total == Decimal("440")

    def test_count_open_toll_lines(self, store, week_invoice):
        assert store.count_open_toll_lines() == {week_invoice["invoice_id"]: 2}

        store.set_invoice_status(week_invoice["invoice_id"], InvoiceStatus.SENT.value)
        assert store.count_open_toll_lines() == {}


class TestApplyGroupMatch:
    """The atomic line update plus transaction link."""

    def test_updates_blank_line_and_links(self, store, week_invoice):
        ids = seed_transactions(store, make_transaction("a"), make_transaction("b"))
        line = store.get_invoice_line(week_invoice["be_line"])

        line_id = store.apply_group_match(
            week_invoice["invoice_id"], ids, Decimal("20.00"), Decimal("21"), line=line
        )

        assert line_id == week_invoice["be_line"]
        updated = store.get_invoice_line(line_id)
        assert updated.quantity == Decimal("1")
        assert updated.unit_price == Decimal("20.00")
        assert updated.total == Decimal("20.00")
        assert updated.description == line.description
        assert {tx.invoice_line_id for tx in store.get_transactions(ids)} == {line_id}
        assert {tx.status for tx in store.get_transactions(ids)} == {TransactionStatus.MATCHED}

    def test_appends_line_when_none_given(self, store, week_invoice):
        ids = seed_transactions(store, make_transaction("a", day="2024-03-06"))

        line_id = store.apply_group_match(
            week_invoice["invoice_id"],
            ids,
            Decimal("10.00"),
            Decimal("21"),
            description="woensdag 06-03-2024\nTol",
        )

        created = store.get_invoice_line(line_id)
        assert created.description == "woensdag 06-03-2024\nTol"
        assert created.position == 4
        assert created.total == Decimal("10.00")

    def test_changed_line_is_a_conflict(self, store, week_invoice):
        """A line edited after it was read is not overwritten."""
        ids = seed_transactions(store, make_transaction("a"))
        stale = store.get_invoice_line(week_invoice["be_line"])
        other = seed_transactions(store, make_transaction("b"))
        store.apply_group_match(
            week_invoice["invoice_id"], other, Decimal("5.00"), Decimal("21"), line=stale
        )

        with pytest.raises(LineConflictError):
            store.apply_group_match(
                week_invoice["invoice_id"], ids, Decimal("10.00"), Decimal("21"), line=stale
            )

        # Nothing from the failed attempt persisted
        assert store.get_invoice_line(stale.id).total == Decimal("5.00")
        assert store.get_transactions(ids)[0].status == TransactionStatus.NEW

    def test_already_matched_transaction_is_a_conflict(self, store, week_invoice):
        ids = seed_transactions(store, make_transaction("a"))
        store.apply_group_match(
            week_invoice["invoice_id"],
            ids,
            Decimal("10.00"),
            Decimal("21"),
            line=store.get_invoice_line(week_invoice["be_line"]),
        )
        plain = store.get_invoice_line(week_invoice["plain_line"])

        with pytest.raises(LineConflictError):
            store.apply_group_match(
                week_invoice["invoice_id"], ids, Decimal("10.00"), Decimal("21"), line=plain
            )

        assert store.get_invoice_line(plain.id).quantity == Decimal("0")

    def test_require_new_false_relinks(self, store, week_invoice):
        ids = seed_transactions(store, make_transaction("a"))
        store.apply_group_match(
            week_invoice["invoice_id"],
            ids,
            Decimal("10.00"),
            Decimal("21"),
            line=store.get_invoice_line(week_invoice["be_line"]),
        )

        line_id = store.apply_group_match(
            week_invoice["invoice_id"],
            ids,
            Decimal("10.00"),
            Decimal("21"),
            line=store.get_invoice_line(week_invoice["plain_line"]),
            require_new=False,
        )

        assert store.get_transactions(ids)[0].invoice_line_id == line_id

    def test_unknown_invoice(self, store):
        ids = seed_transactions(store, make_transaction("a"))
        with pytest.raises(NotFoundError):
            store.apply_group_match("missing", ids, Decimal("1"), Decimal("21"), description="Tol")

    def test_non_concept_invoice(self, store, week_invoice):
        ids = seed_transactions(store, make_transaction("a"))
        store.set_invoice_status(week_invoice["invoice_id"], InvoiceStatus.SENT.value)
        with pytest.raises(LineConflictError):
            store.apply_group_match(
                week_invoice["invoice_id"], ids, Decimal("1"), Decimal("21"), description="Tol"
            )


class TestStats:
    def test_get_stats(self, store, week_invoice):
        seed_transactions(store, make_transaction("a"), make_transaction("b"))
        stats = store.get_stats()

        assert stats["transactions_total"] == 2
        assert stats["transactions_new"] == 2
        assert stats["transactions_matched"] == 0
        assert stats["concept_invoices"] == 1
        assert stats["invoices_needing_toll"] == 1
