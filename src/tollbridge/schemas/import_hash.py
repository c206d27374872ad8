"""
Import hash generation (CRITICAL).

This module defines THE deterministic import_hash function.
This is the ONLY way to generate import hashes in the system.

Hash components, pipe-separated, in order:
    plate | date | time | amount | country | location [| #tie_breaker]

- plate: trimmed, upper-case
- date: YYYY-MM-DD
- time: HH:MM, only when the batch decided to include time; empty otherwise
- amount: at least 2 decimal places, sub-cent digits kept
- country / location: normalised, empty when absent
- tie_breaker: only when explicitly requested for a batch

The import_hash must be:
- Stable: Same inputs always produce same output
- Collision-resistant: Different transactions produce different hashes
- Batch-consistent: Whether time participates is decided once per import,
  never per row
"""

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from .toll_row import RawTollRow

# Length of the hex digest (MD5)
IMPORT_HASH_LENGTH = 32

# Time stored for rows without one
TIME_SENTINEL = "00:00"

# Time joins the hash when MORE than this share of rows carry a real time
DEFAULT_TIME_RATIO_THRESHOLD = 0.5

TIME_EXCLUDED_WARNING = (
    "Transaction time is missing for most rows: duplicate detection uses only "
    "plate, date and amount. Several identical charges on the same day will "
    "be treated as one transaction and the repeats skipped."
)


def _normalize_amount(amount: Decimal | str | float) -> str:
    """
    Normalize amount to consistent format for hashing.

    Args:
        amount: Amount in various formats

    Returns:
        Amount with at least 2 decimal places; sub-cent digits are kept so
        that no two different amounts share a hash component
    """
    if isinstance(amount, str):
        # Handle comma as decimal separator (European format)
        amount = Decimal(amount.replace(",", "."))
    elif isinstance(amount, (float, int)):
        amount = Decimal(str(amount))
    elif not isinstance(amount, Decimal):
        raise ValueError(f"amount must be Decimal, str, or float, got: {type(amount)}")

    normalized = amount.normalize()
    if normalized.as_tuple().exponent >= -2:
        return f"{amount:.2f}"
    return format(normalized, "f")


def _normalize_string(value: str | None) -> str:
    """Normalize a string for hashing (lowercase, strip whitespace)."""
    if not value:
        return ""
    return value.strip().lower()


def compute_import_hash(
    license_plate: str,
    transaction_date: date | str,
    transaction_time: str | None,
    amount: Decimal | str | float,
    country: str | None = None,
    location: str | None = None,
    include_time: bool = False,
    tie_breaker: int | None = None,
) -> str:
    """
    Compute the deterministic import hash for one toll transaction.

    Args:
        license_plate: Vehicle plate
        transaction_date: Calendar date (date or YYYY-MM-DD)
        transaction_time: HH:MM or None
        amount: Charged amount
        country: Toll jurisdiction code (optional)
        location: Free-text location (optional)
        include_time: Batch-level decision whether time is part of the identity
        tie_breaker: Row index forcing uniqueness of otherwise identical rows.
            Only for files known to repeat identical charges legitimately;
            re-importing such a file with reordered rows creates duplicates.

    Returns:
        32-character lowercase hex digest

    Examples:
        >>> compute_import_hash("12-ABC-3", "2024-03-04", None, "10.00")
        '...'  # Deterministic hash
    """
    plate = (license_plate or "").strip().upper()
    if isinstance(transaction_date, date):
        date_part = transaction_date.isoformat()
    else:
        date_part = (transaction_date or "").strip()
    if not plate:
        raise ValueError("license_plate is required for the import hash")
    if len(date_part) != 10 or date_part[4] != "-" or date_part[7] != "-":
        raise ValueError(f"transaction_date must be in YYYY-MM-DD format, got: {date_part}")

    time_part = (transaction_time or "").strip() if include_time else ""

    parts = [
        plate,
        date_part,
        time_part,
        _normalize_amount(amount),
        (country or "").strip().upper(),
        _normalize_string(location),
    ]
    if tie_breaker is not None:
        parts.append(f"#{int(tie_breaker)}")

    # Use pipe separator to avoid collisions
    canonical = "|".join(parts)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


@dataclass
class TimeDecision:
    """Batch-level decision on whether time is part of the import hash."""

    include_time: bool
    timed_rows: int
    total_rows: int
    warnings: list[str] = field(default_factory=list)

    @property
    def timed_ratio(self) -> float:
        return self.timed_rows / self.total_rows if self.total_rows else 0.0


def has_real_time(time_value: str | None, sentinel: str = TIME_SENTINEL) -> bool:
    """True when a row carries a time other than the empty sentinel."""
    value = (time_value or "").strip()
    return bool(value) and value != sentinel


def resolve_time_inclusion(
    rows: Sequence[RawTollRow],
    sentinel: str = TIME_SENTINEL,
    threshold: float = DEFAULT_TIME_RATIO_THRESHOLD,
) -> TimeDecision:
    """
    Decide for a whole batch whether transaction time joins the hash.

    Time is included when strictly more than ``threshold`` of the rows carry
    a real time, whether or not a time column was mapped (times are also
    recovered from datetime cells). Excluding time merges same-day,
    same-amount charges, so that case always produces a warning.

    Args:
        rows: All parsed rows of one import
        sentinel: Time value meaning "no time"
        threshold: Share of timed rows that must be exceeded

    Returns:
        TimeDecision with the flag, counts and user-facing warnings
    """
    total = len(rows)
    timed = sum(1 for row in rows if has_real_time(row.transaction_time, sentinel))
    include_time = total > 0 and timed / total > threshold

    warnings: list[str] = []
    if not include_time:
        warnings.append(TIME_EXCLUDED_WARNING)
    elif timed < total:
        warnings.append(
            f"Note: {total - timed} row(s) have no transaction time ({sentinel}). "
            "Identical charges among those rows can still be merged as duplicates."
        )

    return TimeDecision(
        include_time=include_time,
        timed_rows=timed,
        total_rows=total,
        warnings=warnings,
    )
