"""
SSOT (Single Source of Truth) schemas for the toll engine.

These canonical schemas are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .import_hash import (
    IMPORT_HASH_LENGTH,
    TIME_EXCLUDED_WARNING,
    TIME_SENTINEL,
    TimeDecision,
    compute_import_hash,
    has_real_time,
    resolve_time_inclusion,
)
from .invoice_labels import (
    COUNTRY_LABELS,
    UNKNOWN_COUNTRY,
    TOLL_STATUS_DONE,
    TOLL_STATUS_OPEN,
    InvoiceReference,
    country_label,
    date_label,
    is_blank_placeholder,
    is_open_toll_placeholder,
    is_toll_line_for,
    mentions_country,
    parse_date_label,
    parse_invoice_reference,
    toll_line_description,
    toll_status,
    week_bounds,
    week_id,
    week_of,
)
from .toll_row import MANDATORY_MAPPING_KEYS, ColumnMapping, RawTollRow

__all__ = [
    # Import hash
    "IMPORT_HASH_LENGTH",
    "TIME_EXCLUDED_WARNING",
    "TIME_SENTINEL",
    "TimeDecision",
    "compute_import_hash",
    "has_real_time",
    "resolve_time_inclusion",
    # Invoice conventions
    "COUNTRY_LABELS",
    "UNKNOWN_COUNTRY",
    "TOLL_STATUS_DONE",
    "TOLL_STATUS_OPEN",
    "InvoiceReference",
    "country_label",
    "date_label",
    "is_blank_placeholder",
    "is_open_toll_placeholder",
    "is_toll_line_for",
    "mentions_country",
    "parse_date_label",
    "parse_invoice_reference",
    "toll_line_description",
    "toll_status",
    "week_bounds",
    "week_id",
    "week_of",
    # Rows
    "MANDATORY_MAPPING_KEYS",
    "ColumnMapping",
    "RawTollRow",
]
