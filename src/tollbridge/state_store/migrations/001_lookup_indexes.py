"""
Migration 001: Lookup indexes for reconciliation and the dashboard.

The matcher scans by status, groups by plate and date, and resolves lines
per invoice.
"""

import sqlite3

VERSION = 1
NAME = "lookup_indexes"


def upgrade(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_toll_transactions_status ON toll_transactions(status)"
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_toll_transactions_plate_date
        ON toll_transactions(license_plate, transaction_date)
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_toll_transactions_line ON toll_transactions(invoice_line_id)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_invoice_lines_invoice ON invoice_lines(invoice_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_invoices_status ON invoices(status)")


def downgrade(conn: sqlite3.Connection) -> None:
    conn.execute("DROP INDEX IF EXISTS idx_toll_transactions_status")
    conn.execute("DROP INDEX IF EXISTS idx_toll_transactions_plate_date")
    conn.execute("DROP INDEX IF EXISTS idx_toll_transactions_line")
    conn.execute("DROP INDEX IF EXISTS idx_invoice_lines_invoice")
    conn.execute("DROP INDEX IF EXISTS idx_invoices_status")
