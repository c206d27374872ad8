"""Test fixtures and utilities."""

import csv
import io
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from openpyxl import Workbook

from tollbridge.config import Config
from tollbridge.schemas import ColumnMapping, toll_line_description
from tollbridge.state_store import NewTollTransaction, StateStore

# Headers of a typical operator export (Dutch)
EXPORT_HEADERS = ["Kenteken", "Datum", "Tijd", "Bedrag", "BTW", "Land", "Locatie"]

SAMPLE_ROWS = [
    ["12-ABC-3", date(2024, 3, 4), "08:15", 12.5, 21, "BE", "Brussel"],
    ["12-ABC-3", date(2024, 3, 4), "10:40", 3.2, 21, "BE", "Antwerpen"],
    ["34-XYZ-5", date(2024, 3, 5), "14:02", 7.75, 21, "DE", "Aachen"],
]


def build_xlsx(headers: list, rows: list[list]) -> bytes:
    """Write a real XLSX workbook and return its bytes."""
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(headers)
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def build_csv(headers: list, rows: list[list], delimiter: str = ";") -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter)
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def make_transaction(
    import_hash: str,
    plate: str = "12-ABC-3",
    day: str = "2024-03-04",
    amount: str = "10.00",
    vat_rate: str = "21",
    country: str | None = "BE",
    time: str = "00:00",
) -> NewTollTransaction:
    """Prepared row with sensible defaults; import_hash must be unique per test."""
    return NewTollTransaction(
        import_hash=import_hash,
        license_plate=plate,
        transaction_date=day,
        transaction_time=time,
        amount=Decimal(amount),
        vat_rate=Decimal(vat_rate),
        country=country,
        location=None,
    )


def seed_transactions(store: StateStore, *rows: NewTollTransaction) -> list[str]:
    """Insert prepared rows and return their ids in the given order."""
    store.insert_transactions(list(rows))
    return [store.get_transaction_by_hash(row.import_hash).id for row in rows]


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def config(temp_db) -> Config:
    """Default configuration pointing at the temporary database."""
    return Config(state_db_path=temp_db)


@pytest.fixture
def export_mapping() -> ColumnMapping:
    """Mapping for EXPORT_HEADERS."""
    return ColumnMapping(
        license_plate="Kenteken",
        transaction_date="Datum",
        amount="Bedrag",
        transaction_time="Tijd",
        vat_rate="BTW",
        country="Land",
        location="Locatie",
    )


@pytest.fixture
def sample_xlsx() -> bytes:
    """Three-row export as XLSX bytes."""
    return build_xlsx(EXPORT_HEADERS, SAMPLE_ROWS)


@pytest.fixture
def week_invoice(store) -> dict:
    """Concept invoice for plate 12-ABC-3, week 10 of 2024 (4..10 March).

    Carries a work line, a blank Belgian toll line for 04-03-2024 and a blank
    toll line without country for 05-03-2024.
    """
    invoice_id = store.create_invoice(
        "Transport week 10 - 2024 (12-ABC-3)", invoice_date=date(2024, 3, 11)
    )
    work_line = store.add_invoice_line(invoice_id, "maandag 04-03-2024\nTransport", 8, 55)
    be_line = store.add_invoice_line(invoice_id, toll_line_description(date(2024, 3, 4), "BE"))
    plain_line = store.add_invoice_line(invoice_id, toll_line_description(date(2024, 3, 5)))
    return {
        "invoice_id": invoice_id,
        "work_line": work_line,
        "be_line": be_line,
        "plain_line": plain_line,
    }
