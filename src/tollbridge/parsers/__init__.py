"""
Parsers for toll-operator export files.

Each parser turns an uploaded payload into canonical RawTollRow objects.
"""

from .tabular import (
    DroppedRow,
    ParseResult,
    parse_toll_file,
    parse_toll_rows,
    read_header_row,
    read_sheet,
    suggest_mapping,
)

__all__ = [
    "DroppedRow",
    "ParseResult",
    "parse_toll_file",
    "parse_toll_rows",
    "read_header_row",
    "read_sheet",
    "suggest_mapping",
]
