"""
Error types shared by the parser, importer and reconciliation services.

Each error carries the HTTP status the web layer answers with, so views
never have to guess how a failure should be reported.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tollbridge.services.importer import ImportResult


class TollBridgeError(Exception):
    """Base exception for all TollBridge failures."""

    http_status = 500


class MappingError(TollBridgeError):
    """Column mapping is incomplete or does not fit the uploaded file."""

    http_status = 400

    def __init__(self, message: str, missing: list[str] | None = None):
        self.missing = missing or []
        super().__init__(message)


class ValidationError(TollBridgeError):
    """Caller input that can never succeed as given."""

    http_status = 400


class NotFoundError(TollBridgeError):
    """Referenced invoice or transactions do not exist."""

    http_status = 404


class LineConflictError(TollBridgeError):
    """An invoice line or transaction changed between read and write."""

    http_status = 409


class ImportAbortedError(TollBridgeError):
    """A non-duplicate row failure stopped the import part-way.

    Rows inserted before the failure stay persisted; ``partial`` reports them.
    """

    http_status = 500

    def __init__(self, message: str, partial: ImportResult):
        self.partial = partial
        super().__init__(message)


class MissingLineError(ValidationError):
    """No toll line qualifies for a group and creating one is not allowed."""
