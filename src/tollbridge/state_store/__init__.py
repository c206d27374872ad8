"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Imported toll transactions and their invoice links
- Concept invoices and invoice lines (mirror of the invoicing subsystem)

Enforces uniqueness on import_hash and the status/link invariant.
"""

from .sqlite_store import (
    InsertOutcome,
    InsertStatus,
    InvoiceLineRecord,
    InvoiceRecord,
    InvoiceStatus,
    NewTollTransaction,
    StateStore,
    TollTransactionRecord,
    TransactionStatus,
    is_import_hash_violation,
)

__all__ = [
    "StateStore",
    "InsertOutcome",
    "InsertStatus",
    "InvoiceLineRecord",
    "InvoiceRecord",
    "InvoiceStatus",
    "NewTollTransaction",
    "TollTransactionRecord",
    "TransactionStatus",
    "is_import_hash_violation",
]
