"""
SQLite-based state store implementation.

Tables:
- invoices: Mirror of the invoicing subsystem's invoice headers
- invoice_lines: Mirror of the invoicing subsystem's invoice lines
- toll_transactions: Imported toll rows, deduplicated on import_hash

Amounts are stored as decimal text and read back as Decimal so that sums
are exact until the single rounding step.
"""

import sqlite3
import uuid
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import LineConflictError, NotFoundError
from ..schemas.invoice_labels import is_open_toll_placeholder

# Keeps IN (...) lists well under SQLite's bound-parameter limit
_ID_BATCH = 500


class TransactionStatus(str, Enum):
    """Lifecycle status of a toll transaction."""

    NEW = "new"
    MATCHED = "matched"
    IGNORED = "ignored"


class InvoiceStatus(str, Enum):
    CONCEPT = "concept"
    SENT = "sent"
    PAID = "paid"


class InsertStatus(str, Enum):
    """Outcome of a single-row insert."""

    INSERTED = "INSERTED"
    SKIPPED_DUPLICATE = "SKIPPED_DUPLICATE"
    FAILED = "FAILED"


@dataclass
class InsertOutcome:
    status: InsertStatus
    cause: str | None = None


@dataclass(frozen=True)
class NewTollTransaction:
    """A prepared row, ready to be stored."""

    import_hash: str
    license_plate: str
    transaction_date: str  # ISO date
    transaction_time: str  # HH:MM, "00:00" when unknown
    amount: Decimal
    vat_rate: Decimal
    country: str | None = None
    location: str | None = None


@dataclass
class TollTransactionRecord:
    """Record of an imported toll transaction."""

    id: str
    import_hash: str
    license_plate: str
    transaction_date: str
    transaction_time: str
    amount: Decimal
    vat_rate: Decimal
    country: str | None
    location: str | None
    status: TransactionStatus
    invoice_line_id: str | None
    created_at: str
    updated_at: str

    @property
    def day(self) -> date:
        return date.fromisoformat(self.transaction_date)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TollTransactionRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            import_hash=row["import_hash"],
            license_plate=row["license_plate"],
            transaction_date=row["transaction_date"],
            transaction_time=row["transaction_time"],
            amount=Decimal(row["amount"]),
            vat_rate=Decimal(row["vat_rate"]),
            country=row["country"],
            location=row["location"],
            status=TransactionStatus(row["status"]),
            invoice_line_id=row["invoice_line_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class InvoiceRecord:
    """Invoice header as seen by the toll engine."""

    id: str
    reference: str | None
    status: str
    invoice_date: str | None
    created_at: str

    @property
    def is_concept(self) -> bool:
        return self.status == InvoiceStatus.CONCEPT.value

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "InvoiceRecord":
        return cls(
            id=row["id"],
            reference=row["reference"],
            status=row["status"],
            invoice_date=row["invoice_date"],
            created_at=row["created_at"],
        )


@dataclass
class InvoiceLineRecord:
    """Invoice line; a blank placeholder has quantity = 0 and unit_price = 0."""

    id: str
    invoice_id: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    vat_rate: Decimal
    total: Decimal
    position: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "InvoiceLineRecord":
        return cls(
            id=row["id"],
            invoice_id=row["invoice_id"],
            description=row["description"] or "",
            quantity=Decimal(row["quantity"]),
            unit_price=Decimal(row["unit_price"]),
            vat_rate=Decimal(row["vat_rate"]),
            total=Decimal(row["total"]),
            position=row["position"],
        )


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _batches(ids: Sequence[str]) -> Iterator[list[str]]:
    for start in range(0, len(ids), _ID_BATCH):
        yield list(ids[start : start + _ID_BATCH])


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def is_import_hash_violation(exc: sqlite3.IntegrityError) -> bool:
    """True when an IntegrityError is the import_hash uniqueness constraint."""
    message = str(exc)
    return "UNIQUE" in message.upper() and "import_hash" in message


class StateStore:
    """
    SQLite-based state store for the toll engine.

    Provides persistent tracking of:
    - Imported toll transactions and their status/link
    - Concept invoices and their lines

    Safe for concurrent writers: the group-match unit runs under
    BEGIN IMMEDIATE and checks the state it was planned against.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _immediate_transaction(self) -> Iterator[sqlite3.Connection]:
        """Transaction holding the write lock from its first statement."""
        conn = self._get_connection()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS invoices (
                    id TEXT PRIMARY KEY,
                    reference TEXT,
                    status TEXT NOT NULL DEFAULT 'concept',
                    invoice_date TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS invoice_lines (
                    id TEXT PRIMARY KEY,
                    invoice_id TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    quantity TEXT NOT NULL DEFAULT '0',
                    unit_price TEXT NOT NULL DEFAULT '0',
                    vat_rate TEXT NOT NULL DEFAULT '21',
                    total TEXT NOT NULL DEFAULT '0',
                    position INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
                )
            """
            )

            # invoice_line_id is not a foreign key; add-toll repairs dangling links
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS toll_transactions (
                    id TEXT PRIMARY KEY,
                    import_hash TEXT NOT NULL UNIQUE,
                    license_plate TEXT NOT NULL,
                    transaction_date TEXT NOT NULL,
                    transaction_time TEXT NOT NULL DEFAULT '00:00',
                    amount TEXT NOT NULL,
                    vat_rate TEXT NOT NULL DEFAULT '21',
                    country TEXT,
                    location TEXT,
                    status TEXT NOT NULL DEFAULT 'new'
                        CHECK (status IN ('new', 'matched', 'ignored')),
                    invoice_line_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK ((status = 'matched') = (invoice_line_id IS NOT NULL))
                )
            """
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Toll transaction inserts

    _INSERT_SQL = """
        INSERT INTO toll_transactions (
            id, import_hash, license_plate, transaction_date, transaction_time,
            amount, vat_rate, country, location, status, invoice_line_id,
            created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'new', NULL, ?, ?)
    """

    @staticmethod
    def _insert_params(row: NewTollTransaction, now: str) -> tuple[Any, ...]:
        return (
            str(uuid.uuid4()),
            row.import_hash,
            row.license_plate,
            row.transaction_date,
            row.transaction_time,
            str(row.amount),
            str(row.vat_rate),
            row.country,
            row.location,
            now,
            now,
        )

    def insert_transactions(self, rows: Sequence[NewTollTransaction]) -> int:
        """
        Insert a chunk of rows as one unit.

        Raises:
            sqlite3.IntegrityError: On any constraint violation. Nothing from
                the chunk is persisted in that case.
        """
        if not rows:
            return 0
        now = _utcnow()
        with self._transaction() as conn:
            conn.executemany(self._INSERT_SQL, [self._insert_params(row, now) for row in rows])
        return len(rows)

    def insert_transaction(self, row: NewTollTransaction) -> InsertOutcome:
        """Insert one row, classifying the result instead of raising."""
        try:
            with self._transaction() as conn:
                conn.execute(self._INSERT_SQL, self._insert_params(row, _utcnow()))
        except sqlite3.IntegrityError as e:
            if is_import_hash_violation(e):
                return InsertOutcome(InsertStatus.SKIPPED_DUPLICATE)
            return InsertOutcome(InsertStatus.FAILED, str(e))
        except sqlite3.Error as e:
            return InsertOutcome(InsertStatus.FAILED, str(e))
        return InsertOutcome(InsertStatus.INSERTED)

    # Toll transaction reads

    def get_transactions(self, ids: Sequence[str]) -> list[TollTransactionRecord]:
        """Fetch transactions by id; unknown ids are silently absent."""
        records: list[TollTransactionRecord] = []
        with self._transaction() as conn:
            for batch in _batches(list(dict.fromkeys(ids))):
                rows = conn.execute(
                    f"SELECT * FROM toll_transactions WHERE id IN ({_placeholders(len(batch))})",
                    batch,
                ).fetchall()
                records.extend(TollTransactionRecord.from_row(row) for row in rows)
        return records

    def get_transaction_by_hash(self, import_hash: str) -> TollTransactionRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM toll_transactions WHERE import_hash = ?", (import_hash,)
            ).fetchone()
            return TollTransactionRecord.from_row(row) if row else None

    def get_new_transactions(self, limit: int) -> list[TollTransactionRecord]:
        """Up to `limit` transactions with status new, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM toll_transactions
                WHERE status = ?
                ORDER BY transaction_date, license_plate, transaction_time, id
                LIMIT ?
            """,
                (TransactionStatus.NEW.value, limit),
            ).fetchall()
            return [TollTransactionRecord.from_row(row) for row in rows]

    def get_transactions_for_plate(
        self, license_plate: str, start: date, end: date
    ) -> list[TollTransactionRecord]:
        """All transactions of a plate dated within [start, end], any status."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM toll_transactions
                WHERE license_plate = ? AND transaction_date BETWEEN ? AND ?
                ORDER BY transaction_date, transaction_time, id
            """,
                (license_plate, start.isoformat(), end.isoformat()),
            ).fetchall()
            return [TollTransactionRecord.from_row(row) for row in rows]

    def get_transactions_for_line(self, line_id: str) -> list[TollTransactionRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM toll_transactions WHERE invoice_line_id = ? ORDER BY id", (line_id,)
            ).fetchall()
            return [TollTransactionRecord.from_row(row) for row in rows]

    def get_transactions_since(self, since: date) -> list[TollTransactionRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM toll_transactions
                WHERE transaction_date >= ?
                ORDER BY transaction_date DESC, license_plate, id
            """,
                (since.isoformat(),),
            ).fetchall()
            return [TollTransactionRecord.from_row(row) for row in rows]

    def count_transactions_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TransactionStatus}
        with self._transaction() as conn:
            for row in conn.execute(
                "SELECT status, COUNT(*) AS count FROM toll_transactions GROUP BY status"
            ):
                counts[row["status"]] = row["count"]
        return counts

    # Toll transaction updates

    def set_status(self, ids: Sequence[str], status: TransactionStatus) -> int:
        """
        Set the status of transactions and return how many rows changed.

        new/ignored clear the invoice link. matched is only applied to rows
        that already carry a link.
        """
        status = TransactionStatus(status)
        now = _utcnow()
        updated = 0
        with self._transaction() as conn:
            for batch in _batches(list(dict.fromkeys(ids))):
                marks = _placeholders(len(batch))
                if status == TransactionStatus.MATCHED:
                    cursor = conn.execute(
                        f"""
                        UPDATE toll_transactions
                        SET status = ?, updated_at = ?
                        WHERE id IN ({marks}) AND invoice_line_id IS NOT NULL
                    """,
                        [status.value, now, *batch],
                    )
                else:
                    cursor = conn.execute(
                        f"""
                        UPDATE toll_transactions
                        SET status = ?, invoice_line_id = NULL, updated_at = ?
                        WHERE id IN ({marks})
                    """,
                        [status.value, now, *batch],
                    )
                updated += cursor.rowcount
        return updated

    def unlink_transactions(self, ids: Sequence[str]) -> int:
        """Return transactions to new, dropping their invoice link."""
        return self.set_status(ids, TransactionStatus.NEW)

    # Invoices

    def create_invoice(
        self,
        reference: str | None,
        status: str = InvoiceStatus.CONCEPT.value,
        invoice_date: date | None = None,
    ) -> str:
        invoice_id = str(uuid.uuid4())
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO invoices (id, reference, status, invoice_date, created_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (
                    invoice_id,
                    reference,
                    status,
                    invoice_date.isoformat() if invoice_date else None,
                    _utcnow(),
                ),
            )
        return invoice_id

    def set_invoice_status(self, invoice_id: str, status: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE invoices SET status = ? WHERE id = ?", (status, invoice_id)
            )
            return cursor.rowcount > 0

    def get_invoice(self, invoice_id: str) -> InvoiceRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
            return InvoiceRecord.from_row(row) if row else None

    def get_invoices(self, ids: Iterable[str]) -> dict[str, InvoiceRecord]:
        invoices: dict[str, InvoiceRecord] = {}
        with self._transaction() as conn:
            for batch in _batches(list(dict.fromkeys(ids))):
                rows = conn.execute(
                    f"SELECT * FROM invoices WHERE id IN ({_placeholders(len(batch))})", batch
                ).fetchall()
                for row in rows:
                    invoices[row["id"]] = InvoiceRecord.from_row(row)
        return invoices

    def get_concept_invoices(self, limit: int | None = None) -> list[InvoiceRecord]:
        """Concept invoices, most recent first."""
        sql = """
            SELECT * FROM invoices
            WHERE status = ?
            ORDER BY invoice_date IS NULL, invoice_date DESC, created_at DESC
        """
        params: list[Any] = [InvoiceStatus.CONCEPT.value]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [InvoiceRecord.from_row(row) for row in rows]

    # Invoice lines

    def add_invoice_line(
        self,
        invoice_id: str,
        description: str,
        quantity: Decimal | int = 0,
        unit_price: Decimal | int = 0,
        vat_rate: Decimal | int = 21,
    ) -> str:
        """Append a line to an invoice and return its id."""
        line_id = str(uuid.uuid4())
        quantity = Decimal(quantity)
        unit_price = Decimal(unit_price)
        with self._transaction() as conn:
            self._insert_line(
                conn, line_id, invoice_id, description, quantity, unit_price,
                Decimal(vat_rate), quantity * unit_price,
            )
        return line_id

    @staticmethod
    def _insert_line(
        conn: sqlite3.Connection,
        line_id: str,
        invoice_id: str,
        description: str,
        quantity: Decimal,
        unit_price: Decimal,
        vat_rate: Decimal,
        total: Decimal,
    ) -> None:
        position = conn.execute(
            "SELECT COALESCE(MAX(position), 0) + 1 FROM invoice_lines WHERE invoice_id = ?",
            (invoice_id,),
        ).fetchone()[0]
        conn.execute(
            """
            INSERT INTO invoice_lines (
                id, invoice_id, description, quantity, unit_price, vat_rate, total, position
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                line_id,
                invoice_id,
                description,
                str(quantity),
                str(unit_price),
                str(vat_rate),
                str(total),
                position,
            ),
        )

    def get_invoice_line(self, line_id: str) -> InvoiceLineRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM invoice_lines WHERE id = ?", (line_id,)).fetchone()
            return InvoiceLineRecord.from_row(row) if row else None

    def get_invoice_lines(self, invoice_id: str) -> list[InvoiceLineRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM invoice_lines WHERE invoice_id = ? ORDER BY position, id",
                (invoice_id,),
            ).fetchall()
            return [InvoiceLineRecord.from_row(row) for row in rows]

    def get_lines_for_invoices(self, invoice_ids: Iterable[str]) -> dict[str, list[InvoiceLineRecord]]:
        lines: dict[str, list[InvoiceLineRecord]] = {}
        with self._transaction() as conn:
            for batch in _batches(list(dict.fromkeys(invoice_ids))):
                rows = conn.execute(
                    f"""
                    SELECT * FROM invoice_lines
                    WHERE invoice_id IN ({_placeholders(len(batch))})
                    ORDER BY position, id
                """,
                    batch,
                ).fetchall()
                for row in rows:
                    lines.setdefault(row["invoice_id"], []).append(InvoiceLineRecord.from_row(row))
        return lines

    def get_invoice_lines_by_ids(self, line_ids: Iterable[str]) -> dict[str, InvoiceLineRecord]:
        lines: dict[str, InvoiceLineRecord] = {}
        with self._transaction() as conn:
            for batch in _batches(list(dict.fromkeys(line_ids))):
                rows = conn.execute(
                    f"SELECT * FROM invoice_lines WHERE id IN ({_placeholders(len(batch))})",
                    batch,
                ).fetchall()
                for row in rows:
                    lines[row["id"]] = InvoiceLineRecord.from_row(row)
        return lines

    # Group match

    def apply_group_match(
        self,
        invoice_id: str,
        transaction_ids: Sequence[str],
        total: Decimal,
        vat_rate: Decimal,
        line: InvoiceLineRecord | None = None,
        description: str | None = None,
        require_new: bool = True,
    ) -> str:
        """
        Write a group's total onto an invoice line and link its transactions.

        Either updates `line` (which must still look exactly as it did when
        it was chosen) or, when `line` is None, appends a new line with
        `description`. Every transaction must be updated; with `require_new`
        they must also still be status new. Everything happens in one
        write-locked transaction.

        Returns:
            The id of the invoice line that now carries the total.

        Raises:
            NotFoundError: Invoice does not exist
            LineConflictError: Invoice, line or transactions changed since
                they were read
        """
        ids = list(dict.fromkeys(transaction_ids))
        now = _utcnow()

        with self._immediate_transaction() as conn:
            invoice = conn.execute(
                "SELECT status FROM invoices WHERE id = ?", (invoice_id,)
            ).fetchone()
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} not found")
            if invoice["status"] != InvoiceStatus.CONCEPT.value:
                raise LineConflictError(f"Invoice {invoice_id} is no longer a concept")

            if line is not None:
                current = conn.execute(
                    "SELECT * FROM invoice_lines WHERE id = ? AND invoice_id = ?",
                    (line.id, invoice_id),
                ).fetchone()
                if current is None:
                    raise LineConflictError(f"Invoice line {line.id} no longer exists")
                observed = InvoiceLineRecord.from_row(current)
                if (
                    observed.quantity != line.quantity
                    or observed.unit_price != line.unit_price
                    or observed.description != line.description
                ):
                    raise LineConflictError(f"Invoice line {line.id} changed concurrently")
                conn.execute(
                    """
                    UPDATE invoice_lines
                    SET quantity = '1', unit_price = ?, total = ?, vat_rate = ?
                    WHERE id = ?
                """,
                    (str(total), str(total), str(vat_rate), line.id),
                )
                line_id = line.id
            else:
                line_id = str(uuid.uuid4())
                self._insert_line(
                    conn, line_id, invoice_id, description or "", Decimal(1), total, vat_rate, total
                )

            linked = 0
            guard = " AND status = 'new'" if require_new else ""
            for batch in _batches(ids):
                cursor = conn.execute(
                    f"""
                    UPDATE toll_transactions
                    SET status = 'matched', invoice_line_id = ?, updated_at = ?
                    WHERE id IN ({_placeholders(len(batch))}){guard}
                """,
                    [line_id, now, *batch],
                )
                linked += cursor.rowcount
            if linked != len(ids):
                raise LineConflictError(
                    f"Only {linked} of {len(ids)} transactions could be linked"
                )

        return line_id

    # Statistics

    def count_open_toll_lines(self) -> dict[str, int]:
        """Blank toll placeholder lines per concept invoice."""
        counts: dict[str, int] = {}
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT l.* FROM invoice_lines l
                JOIN invoices i ON i.id = l.invoice_id
                WHERE i.status = ?
            """,
                (InvoiceStatus.CONCEPT.value,),
            ).fetchall()
        for row in rows:
            line = InvoiceLineRecord.from_row(row)
            if is_open_toll_placeholder(line.description, line.quantity, line.unit_price):
                counts[line.invoice_id] = counts.get(line.invoice_id, 0) + 1
        return counts

    def get_stats(self) -> dict[str, Any]:
        """Get engine statistics."""
        by_status = self.count_transactions_by_status()
        with self._transaction() as conn:
            concept = conn.execute(
                "SELECT COUNT(*) AS count FROM invoices WHERE status = ?",
                (InvoiceStatus.CONCEPT.value,),
            ).fetchone()

        open_lines = self.count_open_toll_lines()
        return {
            "transactions_total": sum(by_status.values()),
            "transactions_new": by_status[TransactionStatus.NEW.value],
            "transactions_matched": by_status[TransactionStatus.MATCHED.value],
            "transactions_ignored": by_status[TransactionStatus.IGNORED.value],
            "concept_invoices": concept["count"] if concept else 0,
            "invoices_needing_toll": len(open_lines),
        }
