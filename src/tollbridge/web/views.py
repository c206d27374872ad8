"""
Views for the toll HTTP API.

Every endpoint answers JSON. Callers must be authenticated staff users;
anything else gets 401/403 before a view body runs.
"""

import json
import logging
from functools import wraps
from pathlib import Path
from typing import Any

from django.conf import settings
from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_http_methods

from ..config import Config, ConfigValidationError, load_valid_config
from ..errors import ImportAbortedError, MappingError, TollBridgeError
from ..schemas import ColumnMapping
from ..services import TollImporter, TollReconciler, match_manual, set_status
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def _get_config() -> Config:
    config = load_valid_config(settings.TOLLBRIDGE_CONFIG)
    config.state_db_path = Path(settings.STATE_DB_PATH)
    return config


def _get_store(config: Config) -> StateStore:
    """Get the state store instance."""
    return StateStore(config.state_db_path)


def _get_reconciler() -> TollReconciler:
    config = _get_config()
    return TollReconciler(_get_store(config), config)


def admin_required(view):
    """Reject anonymous callers with 401 and non-staff users with 403."""

    @wraps(view)
    def wrapper(request: HttpRequest, *args, **kwargs):
        user = getattr(request, "user", None)
        if user is None or not user.is_authenticated:
            return JsonResponse({"error": "Unauthorized"}, status=401)
        if not user.is_staff:
            return JsonResponse({"error": "Forbidden"}, status=403)
        return view(request, *args, **kwargs)

    return wrapper


def _error_response(exc: TollBridgeError) -> JsonResponse:
    body: dict[str, Any] = {"error": str(exc)}
    if isinstance(exc, MappingError) and exc.missing:
        body["missing"] = exc.missing
    return JsonResponse(body, status=exc.http_status)


def _failure_response(error: str, exc: Exception) -> JsonResponse:
    if isinstance(exc, ConfigValidationError):
        logger.error(f"Invalid configuration: {exc}")
        return JsonResponse({"error": "Invalid configuration", "details": str(exc)}, status=500)
    logger.exception(error)
    return JsonResponse({"error": error, "details": str(exc)}, status=500)


def _json_body(request: HttpRequest) -> dict[str, Any]:
    """Request body as a dict; unreadable bodies count as empty."""
    try:
        body = json.loads(request.body or b"{}")
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _int_param(request: HttpRequest, name: str, default: int) -> int:
    try:
        return int(request.GET.get(name, default))
    except (TypeError, ValueError):
        return default


# ============================================================================
# Import
# ============================================================================


@admin_required
@require_http_methods(["POST"])
def toll_import(request: HttpRequest) -> JsonResponse:
    """Import a toll export upload and reconcile the new rows."""
    upload = request.FILES.get("file")
    if upload is None:
        return JsonResponse({"error": "No file provided"}, status=400)

    raw_mapping = request.POST.get("column_mapping")
    if not raw_mapping:
        return JsonResponse({"error": "No column_mapping provided"}, status=400)

    try:
        mapping = ColumnMapping.from_json(raw_mapping)
    except MappingError as e:
        return _error_response(e)

    try:
        config = _get_config()
        store = _get_store(config)
        importer = TollImporter(store, config, TollReconciler(store, config))
        result = importer.import_file(upload.read(), mapping)
    except ImportAbortedError as e:
        logger.error(f"Toll import aborted: {e}")
        return JsonResponse(
            {"error": "Import aborted", "details": str(e), "partial": e.partial.to_dict()},
            status=500,
        )
    except TollBridgeError as e:
        return _error_response(e)
    except Exception as e:
        return _failure_response("Import failed", e)

    return JsonResponse(result.to_dict())


# ============================================================================
# Transactions
# ============================================================================


@admin_required
@require_http_methods(["PATCH"])
def toll_transactions(request: HttpRequest) -> JsonResponse:
    """Status changes, reconciliation and manual matches."""
    body = _json_body(request)
    action = str(body.get("action") or "")

    try:
        if action == "setStatus":
            config = _get_config()
            updated = set_status(_get_store(config), body.get("ids"), str(body.get("status") or ""))
            return JsonResponse({"ok": True, "updated": updated})

        if action == "reconcile":
            result = _get_reconciler().reconcile_new()
            return JsonResponse({"ok": True, "reconcile": result.to_dict()})

        if action == "matchManual":
            reconciler = _get_reconciler()
            result = match_manual(
                reconciler.store,
                reconciler,
                body.get("ids"),
                str(body.get("invoiceId") or ""),
                create_if_missing=body.get("createIfMissing") is not False,
            )
            return JsonResponse(result.to_dict())
    except TollBridgeError as e:
        return _error_response(e)
    except Exception as e:
        return _failure_response("Update failed", e)

    return JsonResponse({"error": "Unknown action"}, status=400)


# ============================================================================
# Read models and per-invoice actions
# ============================================================================


@admin_required
@require_http_methods(["GET"])
def toll_dashboard(request: HttpRequest) -> JsonResponse:
    days_back = max(1, _int_param(request, "daysBack", 120))
    try:
        dashboard = _get_reconciler().build_dashboard(days_back=days_back)
    except Exception as e:
        return _failure_response("Dashboard failed", e)
    return JsonResponse(dashboard)


@admin_required
@require_http_methods(["GET"])
def concept_invoices(request: HttpRequest) -> JsonResponse:
    """Concept invoices with their toll status (needsToll=0 lists all)."""
    needs_toll = request.GET.get("needsToll", "1") != "0"
    limit = min(500, max(1, _int_param(request, "limit", 300)))
    try:
        invoices = _get_reconciler().list_concept_invoices(needs_toll=needs_toll, limit=limit)
    except Exception as e:
        return _failure_response("Listing failed", e)
    return JsonResponse({"invoices": invoices})


@admin_required
@require_http_methods(["POST"])
def add_toll_to_invoice(request: HttpRequest, invoice_id: str) -> JsonResponse:
    try:
        result = _get_reconciler().add_toll_to_invoice(invoice_id)
    except TollBridgeError as e:
        return _error_response(e)
    except Exception as e:
        return _failure_response("Adding toll failed", e)
    return JsonResponse({"ok": True, **result})
