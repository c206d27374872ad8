"""
Column-mapped parser for toll-operator exports.

Turns an XLSX workbook or a delimited text export into RawTollRow objects,
using a caller-supplied mapping from toll fields to header labels.

Rows with a missing plate, an unparsable date or a non-numeric amount are
dropped; every drop is reported in ParseResult.dropped so the caller can
surface a count.
"""

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from openpyxl import load_workbook
from openpyxl.utils.datetime import from_excel

from ..errors import MappingError
from ..schemas.toll_row import ColumnMapping, RawTollRow, plain_decimal

logger = logging.getLogger(__name__)

# First bytes of every XLSX (ZIP) file
_ZIP_MAGIC = b"PK\x03\x04"

# Excel serial numbers that plausibly encode a date (1954 .. 2119)
_EXCEL_SERIAL_RANGE = (20000, 80000)

_DMY_RE = re.compile(r"^(\d{1,2})[-/.](\d{1,2})[-/.](\d{2,4})(?:[\sT].*)?$")
_YMD_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[\sT].*)?$")
_TIME_RE = re.compile(r"(\d{1,2}):(\d{2})(?::\d{2})?")

# Header keywords (Dutch and English) for suggest_mapping, checked in order
_HEADER_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("license_plate", ("kenteken", "license", "plate", "nummerplaat")),
    ("transaction_date", ("datum", "date")),
    ("transaction_time", ("tijd", "time", "uur")),
    ("amount", ("bedrag", "amount", "prijs", "total")),
    ("vat_rate", ("btw", "vat")),
    ("country", ("land", "country", "serviceland")),
    ("location", ("locatie", "location", "plaats", "route")),
]


@dataclass
class DroppedRow:
    """A data row that could not be turned into a RawTollRow."""

    row_number: int
    reason: str


@dataclass
class ParseResult:
    """Outcome of parsing one export file."""

    rows: list[RawTollRow] = field(default_factory=list)
    dropped: list[DroppedRow] = field(default_factory=list)

    @property
    def dropped_count(self) -> int:
        return len(self.dropped)


# ============================================================================
# Sheet loading
# ============================================================================


def _is_xlsx(payload: bytes) -> bool:
    return payload[:4] == _ZIP_MAGIC


def _read_xlsx(payload: bytes) -> list[list[Any]]:
    workbook = load_workbook(io.BytesIO(payload), read_only=True, data_only=True)
    try:
        if not workbook.worksheets:
            return []
        sheet = workbook.worksheets[0]
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _decode_text(payload: bytes) -> str:
    try:
        return payload.decode("utf-8-sig")
    except UnicodeDecodeError:
        return payload.decode("latin-1")


def _read_delimited(payload: bytes) -> list[list[Any]]:
    text = _decode_text(payload)
    if not text.strip():
        return []
    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t|")
    except csv.Error:
        dialect = csv.excel
    return [list(row) for row in csv.reader(io.StringIO(text), dialect)]


def read_sheet(payload: bytes) -> list[list[Any]]:
    """Read the first worksheet (or the text table) as a list of raw rows."""
    if not payload:
        return []
    if _is_xlsx(payload):
        return _read_xlsx(payload)
    return _read_delimited(payload)


def read_header_row(payload: bytes) -> list[str]:
    """Header labels of the first row, for the column picker."""
    raw = read_sheet(payload)
    if not raw:
        return []
    return [_cell_text(h) for h in raw[0]]


def suggest_mapping(headers: list[str]) -> dict[str, str]:
    """Guess a column mapping from header labels.

    Each field takes the first header containing one of its keywords; each
    header is used at most once.
    """
    suggestion: dict[str, str] = {}
    for header in headers:
        key = " ".join(header.strip().lower().split())
        if not key:
            continue
        for field_name, keywords in _HEADER_KEYWORDS:
            if field_name in suggestion:
                continue
            if any(word in key for word in keywords):
                suggestion[field_name] = header
                break
    return suggestion


# ============================================================================
# Cell conversion
# ============================================================================


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _format_hhmm(hours: int, minutes: int) -> str:
    return f"{hours % 24:02d}:{minutes:02d}"


def _fraction_to_hhmm(fraction: float) -> str:
    total_minutes = round(fraction * 24 * 60)
    return _format_hhmm(total_minutes // 60, total_minutes % 60)


def parse_date(value: Any) -> date | None:
    """Convert a date cell to a calendar date."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if _is_number(value):
        low, high = _EXCEL_SERIAL_RANGE
        if not low <= float(value) <= high:
            return None
        converted = from_excel(float(value))
        return converted.date() if isinstance(converted, datetime) else None

    text = _cell_text(value)
    try:
        match = _DMY_RE.match(text)
        if match:
            day, month, year = match.groups()
            if len(year) == 2:
                year = f"20{year}"
            return date(int(year), int(month), int(day))
        match = _YMD_RE.match(text)
        if match:
            year, month, day = match.groups()
            return date(int(year), int(month), int(day))
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def parse_time(value: Any) -> str | None:
    """Convert a time cell to HH:MM, or None when it carries no time."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _format_hhmm(value.hour, value.minute)
    if isinstance(value, time):
        return _format_hhmm(value.hour, value.minute)
    if isinstance(value, timedelta):
        return _fraction_to_hhmm((value.total_seconds() % 86400) / 86400)
    if _is_number(value):
        number = float(value)
        if 0 <= number < 1:
            return _fraction_to_hhmm(number)
        if 1 <= number <= 24:
            hours = int(number)
            return _format_hhmm(hours, round((number - hours) * 60))
        if number > 24:
            # Excel datetime serial: the fraction is the time of day
            return _fraction_to_hhmm(number - int(number))
        return None

    text = _cell_text(value)
    match = _TIME_RE.search(text)
    if match:
        return _format_hhmm(int(match.group(1)), int(match.group(2)))
    try:
        number = float(text.replace(",", "."))
    except ValueError:
        return None
    if 0 <= number <= 24:
        hours = int(number)
        return _format_hhmm(hours, round((number - hours) * 60))
    return None


def _time_from_date_cell(value: Any) -> str | None:
    """Time carried by a datetime in the date column, if any."""
    if isinstance(value, datetime):
        if value.hour or value.minute:
            return _format_hhmm(value.hour, value.minute)
        return None
    if _is_number(value):
        fraction = float(value) - int(float(value))
        return _fraction_to_hhmm(fraction) if fraction > 0 else None
    if isinstance(value, str):
        match = _TIME_RE.search(value)
        if match:
            return _format_hhmm(int(match.group(1)), int(match.group(2)))
    return None


def parse_amount(value: Any) -> Decimal | None:
    """Convert an amount cell to an exact Decimal.

    Accepts numeric cells and text such as "€ 1.234,56", "12,34" or "12.34".
    """
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    if _is_number(value):
        return Decimal(str(value))

    cleaned = re.sub(r"[€\s ]", "", str(value))
    if not cleaned:
        return None
    if "." in cleaned and "," in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def parse_vat_rate(value: Any) -> Decimal | None:
    """Convert a VAT cell to a percentage (21, "21%", "21,0" or 0.21)."""
    if value is None or value == "":
        return None
    if _is_number(value):
        number = Decimal(str(value))
    else:
        text = _cell_text(value).replace("%", "").strip().replace(",", ".")
        if not text:
            return None
        try:
            number = Decimal(text)
        except InvalidOperation:
            return None
    if not number.is_finite():
        return None
    if number <= 0:
        return Decimal("0")
    if number <= 1:
        number = number * 100
    return plain_decimal(number)


def _normalize_plate(value: Any) -> str | None:
    text = _cell_text(value).upper()
    return text or None


def _normalize_country(value: Any) -> str | None:
    text = _cell_text(value).upper()
    return text or None


def _optional_text(value: Any) -> str | None:
    text = _cell_text(value)
    return text or None


# ============================================================================
# Mapping
# ============================================================================


def _find_header_index(headers: list[str], label: str | None) -> int:
    """Index of a mapped header: exact match first, then case-insensitive."""
    wanted = (label or "").strip()
    if not wanted:
        return -1
    for index, header in enumerate(headers):
        if header == wanted:
            return index
    lowered = wanted.lower()
    for index, header in enumerate(headers):
        if header.lower() == lowered:
            return index
    return -1


def _cell(row: list[Any], index: int) -> Any:
    if index < 0 or index >= len(row):
        return None
    return row[index]


def parse_toll_rows(raw: list[list[Any]], mapping: ColumnMapping) -> ParseResult:
    """
    Parse raw sheet rows (header first) with a column mapping.

    Args:
        raw: Rows of cell values; raw[0] is the header row
        mapping: Column mapping

    Returns:
        ParseResult with parsed and dropped rows

    Raises:
        MappingError: If a mandatory mapped header is absent from the file
    """
    result = ParseResult()
    if not raw:
        return result

    headers = [_cell_text(h) for h in raw[0]]
    idx_plate = _find_header_index(headers, mapping.license_plate)
    idx_date = _find_header_index(headers, mapping.transaction_date)
    idx_amount = _find_header_index(headers, mapping.amount)

    missing = [
        name
        for name, index in (
            ("license_plate", idx_plate),
            ("transaction_date", idx_date),
            ("amount", idx_amount),
        )
        if index == -1
    ]
    if missing:
        raise MappingError(
            f"Missing mapped columns in header row: {', '.join(missing)}", missing=missing
        )

    optional = {}
    for name in ("transaction_time", "country", "vat_rate", "location"):
        label = getattr(mapping, name)
        optional[name] = _find_header_index(headers, label)
        if label and optional[name] == -1:
            logger.warning(f"Mapped column {label!r} for {name} not found in header row")

    for offset, row in enumerate(raw[1:], start=2):
        if not row or all(_cell_text(c) == "" for c in row):
            continue

        plate = _normalize_plate(_cell(row, idx_plate))
        date_value = _cell(row, idx_date)
        transaction_date = parse_date(date_value)
        amount = parse_amount(_cell(row, idx_amount))

        reasons = []
        if not plate:
            reasons.append("missing plate")
        if transaction_date is None:
            reasons.append("missing/invalid date")
        if amount is None:
            reasons.append("missing/invalid amount")
        if reasons:
            result.dropped.append(DroppedRow(row_number=offset, reason=", ".join(reasons)))
            continue

        transaction_time = parse_time(_cell(row, optional["transaction_time"]))
        if transaction_time is None:
            transaction_time = _time_from_date_cell(date_value)

        result.rows.append(
            RawTollRow(
                license_plate=plate,
                transaction_date=transaction_date,
                amount=amount,
                transaction_time=transaction_time,
                vat_rate=parse_vat_rate(_cell(row, optional["vat_rate"])),
                country=_normalize_country(_cell(row, optional["country"])),
                location=_optional_text(_cell(row, optional["location"])),
                row_number=offset,
            )
        )

    if result.dropped:
        dropped = [(d.row_number, d.reason) for d in result.dropped]
        logger.debug(f"Dropped {len(dropped)} row(s): {dropped}")

    return result


def parse_toll_file(payload: bytes, mapping: ColumnMapping) -> ParseResult:
    """Parse an uploaded export (XLSX or delimited text) with a column mapping."""
    return parse_toll_rows(read_sheet(payload), mapping)
