"""Toll engine services: batch import, reconciliation and manual overrides."""

from .importer import ImportResult, TollImporter
from .manual import ManualMatchResult, match_manual, set_status
from .reconciliation import (
    ReconcileResult,
    TollReconciler,
    UnmatchedGroup,
    round_money,
    select_target_line,
)

__all__ = [
    "ImportResult",
    "TollImporter",
    "ManualMatchResult",
    "match_manual",
    "set_status",
    "ReconcileResult",
    "TollReconciler",
    "UnmatchedGroup",
    "round_money",
    "select_target_line",
]
