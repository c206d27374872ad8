"""
Invoice conventions of the invoicing subsystem (SSOT).

The toll engine only learns which invoice and line belong to a transaction
group through text conventions owned by the invoicing side:

1. Invoice reference: "... week {W} - {YYYY} ... ({PLATE})"
2. Toll line description: contains "tol" and the date as dd-mm-yyyy,
   optionally the Dutch country name
3. Blank placeholder line: quantity = 0 and unit_price = 0

Week numbering: week 1 starts on the first Monday of January. Days before
that Monday belong to the last week of the previous week-year.
"""

import re
from datetime import date, timedelta
from decimal import Decimal
from typing import NamedTuple

TOLL_KEYWORD = "tol"

TOLL_STATUS_OPEN = "Tol toevoegen"
TOLL_STATUS_DONE = "Tol toegevoegd"

COUNTRY_LABELS = {
    "BE": "België",
    "DE": "Duitsland",
    "FR": "Frankrijk",
}

WEEKDAYS_NL = ("maandag", "dinsdag", "woensdag", "donderdag", "vrijdag", "zaterdag", "zondag")

UNKNOWN_COUNTRY = "UNKNOWN"

_REFERENCE_RE = re.compile(r"week\s+(\d{1,2})\s*-\s*(\d{4}).*\(([A-Za-z0-9-]+)\)", re.IGNORECASE)
_DATE_LABEL_RE = re.compile(r"(\d{2})-(\d{2})-(\d{4})")


class InvoiceReference(NamedTuple):
    """Week/plate encoded in an invoice reference."""

    week: int
    year: int
    plate: str


def parse_invoice_reference(reference: str | None) -> InvoiceReference | None:
    """Extract week, week-year and plate from an invoice reference."""
    match = _REFERENCE_RE.search(reference or "")
    if not match:
        return None
    return InvoiceReference(
        week=int(match.group(1)),
        year=int(match.group(2)),
        plate=match.group(3).upper(),
    )


def _first_monday(year: int) -> date:
    jan_first = date(year, 1, 1)
    return jan_first + timedelta(days=(7 - jan_first.weekday()) % 7)


def week_of(day: date) -> tuple[int, int]:
    """Return (week, week_year) for a date."""
    start = _first_monday(day.year)
    if day < start:
        start = _first_monday(day.year - 1)
        return (day - start).days // 7 + 1, day.year - 1
    return (day - start).days // 7 + 1, day.year


def week_bounds(week: int, year: int) -> tuple[date, date]:
    """First and last day (Monday..Sunday) of a week."""
    start = _first_monday(year) + timedelta(weeks=week - 1)
    return start, start + timedelta(days=6)


def week_id(day: date) -> str:
    """Week identifier as YYYY-WW."""
    week, year = week_of(day)
    return f"{year}-{week:02d}"


def date_label(day: date) -> str:
    """Date as it appears in line descriptions (dd-mm-yyyy)."""
    return day.strftime("%d-%m-%Y")


def parse_date_label(description: str | None) -> date | None:
    """Find the first dd-mm-yyyy date in a line description."""
    match = _DATE_LABEL_RE.search(description or "")
    if not match:
        return None
    try:
        return date(int(match.group(3)), int(match.group(2)), int(match.group(1)))
    except ValueError:
        return None


def country_label(country: str | None) -> str:
    """Dutch country name used in line descriptions, or '' when unknown."""
    return COUNTRY_LABELS.get((country or "").strip().upper(), "")


def toll_line_description(day: date, country: str | None = None) -> str:
    """Description for a newly created toll line."""
    label = country_label(country)
    head = f"{WEEKDAYS_NL[day.weekday()]} {date_label(day)}"
    return f"{head}\nTol {label}" if label else f"{head}\nTol"


def is_toll_line_for(description: str | None, day: date) -> bool:
    """True when a description is a toll line for the given date."""
    text = (description or "").lower()
    return TOLL_KEYWORD in text and date_label(day) in text


def mentions_country(description: str | None, country: str | None) -> bool:
    """True when the description carries the country's Dutch label."""
    label = country_label(country)
    return bool(label) and label.lower() in (description or "").lower()


def is_blank_placeholder(quantity: Decimal, unit_price: Decimal) -> bool:
    return quantity == 0 and unit_price == 0


def is_open_toll_placeholder(description: str | None, quantity: Decimal, unit_price: Decimal) -> bool:
    """Blank line whose description mentions toll."""
    return TOLL_KEYWORD in (description or "").lower() and is_blank_placeholder(
        quantity, unit_price
    )


def toll_status(open_toll_lines: int) -> str:
    return TOLL_STATUS_OPEN if open_toll_lines > 0 else TOLL_STATUS_DONE
