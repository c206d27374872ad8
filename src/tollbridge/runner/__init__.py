"""
CLI runner module.

Provides commands:
- import: Store a toll export and reconcile it
- headers: Inspect an export's columns
- reconcile: Match new transactions to concept invoices
- set-status / match / add-toll: Manual overrides
- status: Statistics
- serve: HTTP API
- create-admin: Staff login for the HTTP API
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
