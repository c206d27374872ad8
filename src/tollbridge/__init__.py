"""
Toll-operator export → Deduplicated transactions → Invoice-line reconciliation

A deterministic, testable engine that imports bulk toll exports, gives every
transaction a stable identity so repeated uploads never double-count, and
merges the charges onto draft invoice lines.
"""

__version__ = "0.1.0"
