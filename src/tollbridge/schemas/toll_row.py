"""
Canonical raw toll row and column mapping (SSOT).

A RawTollRow is what the tabular parser produces and what the importer
consumes. Fields that an export may not carry are explicit Optionals instead
of keys that might or might not be present.
"""

import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from ..errors import MappingError

MANDATORY_MAPPING_KEYS = ("license_plate", "transaction_date", "amount")
OPTIONAL_MAPPING_KEYS = ("transaction_time", "country", "vat_rate", "location")


@dataclass(frozen=True)
class RawTollRow:
    """One parsed row of a toll-operator export."""

    license_plate: str
    transaction_date: date
    amount: Decimal  # Exact, not yet rounded
    transaction_time: str | None = None  # HH:MM
    vat_rate: Decimal | None = None
    country: str | None = None
    location: str | None = None
    row_number: int = 0  # 1-based row in the source sheet

    @property
    def date_iso(self) -> str:
        return self.transaction_date.isoformat()


@dataclass(frozen=True)
class ColumnMapping:
    """Maps each toll field to a header label in the uploaded file."""

    license_plate: str
    transaction_date: str
    amount: str
    transaction_time: str | None = None
    country: str | None = None
    vat_rate: str | None = None
    location: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "ColumnMapping":
        """Build a mapping, rejecting absent mandatory keys.

        Raises:
            MappingError: If data is not an object or a mandatory key is empty
        """
        if not isinstance(data, dict):
            raise MappingError("column_mapping must be a JSON object")

        missing = [key for key in MANDATORY_MAPPING_KEYS if not _label(data.get(key))]
        if missing:
            raise MappingError(
                "column_mapping must include license_plate, transaction_date, and amount",
                missing=missing,
            )

        return cls(
            license_plate=_label(data["license_plate"]),
            transaction_date=_label(data["transaction_date"]),
            amount=_label(data["amount"]),
            **{key: _label(data.get(key)) or None for key in OPTIONAL_MAPPING_KEYS},
        )

    @classmethod
    def from_json(cls, raw: str) -> "ColumnMapping":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MappingError(f"Invalid column_mapping JSON: {e}") from e
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, str]:
        keys = MANDATORY_MAPPING_KEYS + OPTIONAL_MAPPING_KEYS
        return {key: getattr(self, key) for key in keys if getattr(self, key)}


def plain_decimal(value: Decimal) -> Decimal:
    """Drop trailing zeros without switching to exponent notation (20, not 2E+1)."""
    if value == value.to_integral_value():
        return value.quantize(Decimal("1"))
    return value.normalize()


def _label(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()
