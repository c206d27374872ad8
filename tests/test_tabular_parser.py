"""Tests for the column-mapped tabular parser."""

from datetime import date, datetime, time
from decimal import Decimal

import pytest

from conftest import EXPORT_HEADERS, SAMPLE_ROWS, build_csv, build_xlsx
from tollbridge.errors import MappingError
from tollbridge.parsers import parse_toll_file, read_header_row, suggest_mapping
from tollbridge.parsers.tabular import parse_amount, parse_date, parse_time, parse_vat_rate
from tollbridge.schemas import ColumnMapping


class TestParseXlsx:
    """Parsing real XLSX payloads."""

    def test_parses_all_rows(self, sample_xlsx, export_mapping):
        result = parse_toll_file(sample_xlsx, export_mapping)

        assert len(result.rows) == 3
        assert result.dropped_count == 0

        first = result.rows[0]
        assert first.license_plate == "12-ABC-3"
        assert first.transaction_date == date(2024, 3, 4)
        assert first.transaction_time == "08:15"
        assert first.amount == Decimal("12.5")
        assert first.vat_rate == Decimal("21")
        assert first.country == "BE"
        assert first.location == "Brussel"
        assert first.row_number == 2

    def test_minimal_mapping(self, sample_xlsx):
        """Only the three mandatory columns mapped."""
        mapping = ColumnMapping(license_plate="Kenteken", transaction_date="Datum", amount="Bedrag")
        result = parse_toll_file(sample_xlsx, mapping)

        assert len(result.rows) == 3
        assert all(row.transaction_time is None for row in result.rows)
        assert all(row.vat_rate is None for row in result.rows)
        assert all(row.country is None for row in result.rows)

    def test_time_recovered_from_datetime_cell(self):
        payload = build_xlsx(
            ["Kenteken", "Datum", "Bedrag"],
            [["12-ABC-3", datetime(2024, 3, 4, 7, 45), 4.1]],
        )
        mapping = ColumnMapping(license_plate="Kenteken", transaction_date="Datum", amount="Bedrag")
        row = parse_toll_file(payload, mapping).rows[0]

        assert row.transaction_date == date(2024, 3, 4)
        assert row.transaction_time == "07:45"

    def test_header_match_is_case_insensitive(self, sample_xlsx):
        mapping = ColumnMapping(license_plate="kenteken", transaction_date="DATUM", amount="bedrag")
        assert len(parse_toll_file(sample_xlsx, mapping).rows) == 3

    def test_missing_mapped_header(self, sample_xlsx):
        """Mandatory mapped header absent from the file is a mapping error."""
        mapping = ColumnMapping(license_plate="Plate", transaction_date="Datum", amount="Bedrag")
        with pytest.raises(MappingError) as exc_info:
            parse_toll_file(sample_xlsx, mapping)
        assert exc_info.value.missing == ["license_plate"]

    def test_missing_optional_header_is_tolerated(self, sample_xlsx, caplog):
        mapping = ColumnMapping(
            license_plate="Kenteken",
            transaction_date="Datum",
            amount="Bedrag",
            country="Serviceland",
        )
        result = parse_toll_file(sample_xlsx, mapping)
        assert len(result.rows) == 3
        assert all(row.country is None for row in result.rows)
        assert "Mapped column 'Serviceland' for country not found in header row" in caplog.text

    def test_invalid_rows_dropped(self, export_mapping):
        rows = SAMPLE_ROWS + [
            ["", date(2024, 3, 4), "08:00", 1, 21, "BE", None],
            ["12-ABC-3", "not a date", "08:00", 1, 21, "BE", None],
            ["12-ABC-3", date(2024, 3, 4), "08:00", "n/a", 21, "BE", None],
        ]
        result = parse_toll_file(build_xlsx(EXPORT_HEADERS, rows), export_mapping)

        assert len(result.rows) == 3
        assert result.dropped_count == 3
        assert [d.row_number for d in result.dropped] == [5, 6, 7]
        assert "missing plate" in result.dropped[0].reason
        assert "date" in result.dropped[1].reason
        assert "amount" in result.dropped[2].reason

    def test_blank_rows_skipped_silently(self, export_mapping):
        rows = [SAMPLE_ROWS[0], [None] * 7, SAMPLE_ROWS[1]]
        result = parse_toll_file(build_xlsx(EXPORT_HEADERS, rows), export_mapping)
        assert len(result.rows) == 2
        assert result.dropped_count == 0

    def test_empty_payload(self, export_mapping):
        result = parse_toll_file(b"", export_mapping)
        assert result.rows == []


class TestParseCsv:
    """Parsing delimited text exports."""

    def test_semicolon_export_with_european_numbers(self, export_mapping):
        payload = build_csv(
            EXPORT_HEADERS,
            [
                ["12-abc-3", "04-03-2024", "08:15", "12,50", "21%", "be", "Brussel"],
                ["12-abc-3", "2024-03-05", "", "€ 1.234,56", "0,21", "", ""],
            ],
        )
        result = parse_toll_file(payload, export_mapping)

        assert len(result.rows) == 2
        first, second = result.rows
        assert first.license_plate == "12-ABC-3"
        assert first.transaction_date == date(2024, 3, 4)
        assert first.amount == Decimal("12.50")
        assert first.vat_rate == Decimal("21")
        assert first.country == "BE"

        assert second.transaction_date == date(2024, 3, 5)
        assert second.transaction_time is None
        assert second.amount == Decimal("1234.56")
        assert second.vat_rate == Decimal("21")
        assert second.country is None
        assert second.location is None

    def test_read_header_row(self):
        payload = build_csv(EXPORT_HEADERS, [])
        assert read_header_row(payload) == EXPORT_HEADERS


class TestCellConversion:
    """Tests for individual cell converters."""

    def test_parse_date_formats(self):
        assert parse_date("04-03-2024") == date(2024, 3, 4)
        assert parse_date("4/3/24") == date(2024, 3, 4)
        assert parse_date("2024-03-04") == date(2024, 3, 4)
        assert parse_date("2024-03-04T10:15:00") == date(2024, 3, 4)
        assert parse_date(datetime(2024, 3, 4, 10, 15)) == date(2024, 3, 4)
        assert parse_date(45355) == date(2024, 3, 4)

    def test_parse_date_rejects_garbage(self):
        assert parse_date("31-02-2024") is None
        assert parse_date("yesterday") is None
        assert parse_date(12) is None
        assert parse_date(None) is None

    def test_parse_time_formats(self):
        assert parse_time("8:05") == "08:05"
        assert parse_time("08:05:59") == "08:05"
        assert parse_time(time(17, 30)) == "17:30"
        assert parse_time(0.5) == "12:00"
        assert parse_time("") is None
        assert parse_time("late") is None

    def test_parse_amount(self):
        assert parse_amount("12,34") == Decimal("12.34")
        assert parse_amount("12.34") == Decimal("12.34")
        assert parse_amount("1.234,56") == Decimal("1234.56")
        assert parse_amount(7.75) == Decimal("7.75")
        assert parse_amount("abc") is None
        assert parse_amount(None) is None

    def test_parse_vat_rate(self):
        assert parse_vat_rate(21) == Decimal("21")
        assert parse_vat_rate("21%") == Decimal("21")
        assert parse_vat_rate("9,0") == Decimal("9")
        assert parse_vat_rate(0.21) == Decimal("21")
        assert parse_vat_rate(0) == Decimal("0")
        assert parse_vat_rate("") is None


class TestSuggestMapping:
    def test_dutch_headers(self):
        suggestion = suggest_mapping(EXPORT_HEADERS)
        assert suggestion == {
            "license_plate": "Kenteken",
            "transaction_date": "Datum",
            "transaction_time": "Tijd",
            "amount": "Bedrag",
            "vat_rate": "BTW",
            "country": "Land",
            "location": "Locatie",
        }

    def test_english_headers(self):
        suggestion = suggest_mapping(["License plate", "Date", "Amount incl. VAT"])
        assert suggestion["license_plate"] == "License plate"
        assert suggestion["transaction_date"] == "Date"
        assert suggestion["amount"] == "Amount incl. VAT"
        # A header is used for one field only
        assert "vat_rate" not in suggestion
