"""
Customs ledger HTTP views.

Thin JSON adapters over apps.customs.services. The company is taken from the
active tenancy scope (X-Company-Id header); an unresolved scope is refused.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from django.core.exceptions import ValidationError
from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt

from apps.customs import services
from apps.customs.exceptions import (
    LedgerConflictError,
    LedgerError,
    LedgerTimeoutError,
    LedgerValidationError,
    RowError,
)
from apps.customs.models import LedgerEntry
from apps.customs.normalization import normalize_text
from apps.customs.validators import parse_ledger_date
from apps.tenancy.context import get_active_company_id

logger = logging.getLogger(__name__)


def _json_error(code: str, message: str, status: int = 400, errors: list | None = None) -> JsonResponse:
    body: dict[str, Any] = {"code": code, "message": message}
    if errors is not None:
        body["errors"] = errors
    return JsonResponse(body, status=status)


def _method_not_allowed() -> JsonResponse:
    return _json_error("METHOD_NOT_ALLOWED", "Method not allowed for this endpoint.", status=405)


def _parse_json_body(request: HttpRequest) -> dict[str, Any]:
    if not request.body:
        return {}
    try:
        parsed = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise LedgerValidationError([RowError(None, "body", "Request body must be valid JSON.")]) from exc
    if not isinstance(parsed, dict):
        raise LedgerValidationError([RowError(None, "body", "Request body must be a JSON object.")])
    return parsed


def _actor_id(request: HttpRequest):
    user = getattr(request, "user", None)
    if user is not None and user.is_authenticated:
        return user.pk
    return None


def serialize_entry(entry: LedgerEntry) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "itemType": entry.item_type,
        "itemCode": entry.item_code,
        "itemName": entry.item_name,
        "uom": entry.uom,
        "date": entry.date.isoformat(),
        "beginning": str(entry.beginning),
        "incoming": str(entry.incoming),
        "outgoing": str(entry.outgoing),
        "adjustment": str(entry.adjustment),
        "ending": str(entry.ending),
        "stockCount": str(entry.stock_count) if entry.stock_count is not None else None,
        "variant": str(entry.variant),
        "remarks": entry.remarks,
    }


def _dispatch(request: HttpRequest, handler) -> JsonResponse:
    """Resolve tenant scope, run `handler(company_id)`, map typed failures to statuses."""
    company_id = get_active_company_id()
    if not company_id:
        return _json_error("TENANT_UNRESOLVED", "Company scope unresolved (X-Company-Id).", status=403)

    try:
        return handler(company_id)
    except LedgerValidationError as exc:
        return _json_error(exc.code, exc.summary, status=400, errors=[e.as_dict() for e in exc.row_errors])
    except ValidationError as exc:
        # model-level checks (e.g. a quantity beyond the column precision)
        return _json_error(LedgerValidationError.code, "; ".join(exc.messages), status=400)
    except LedgerConflictError as exc:
        return _json_error(exc.code, str(exc), status=409)
    except LedgerTimeoutError as exc:
        return _json_error(exc.code, str(exc), status=504)
    except LedgerError as exc:
        logger.error("ledger request failed company=%s path=%s: %s", company_id, request.path, exc)
        return _json_error(exc.code, "Ledger integrity check failed; the write was rolled back.", status=500)


def _records_from_body(body: dict[str, Any]):
    return body.get("records")


@csrf_exempt
def ledger_view(request: HttpRequest) -> JsonResponse:
    if request.method == "GET":
        return _dispatch(request, lambda company_id: _list_entries(request, company_id))
    if request.method == "POST":
        return _dispatch(request, lambda company_id: _post_movement(request, company_id))
    return _method_not_allowed()


def _list_entries(request: HttpRequest, company_id) -> JsonResponse:
    item_code = normalize_text(request.GET.get("item_code"))
    if not item_code:
        raise LedgerValidationError([RowError(None, "item_code", "item_code is required")])

    bounds = {}
    for name in ("start", "end"):
        raw = request.GET.get(name)
        if raw:
            try:
                bounds[name] = parse_ledger_date(raw)
            except ValueError as exc:
                raise LedgerValidationError([RowError(None, name, str(exc))]) from exc

    entries = services.ledger_entries(company_id, item_code, **bounds)
    return JsonResponse({"itemCode": item_code, "entries": [serialize_entry(e) for e in entries]})


def _post_movement(request: HttpRequest, company_id) -> JsonResponse:
    body = _parse_json_body(request)
    result = services.post_movement(company_id, body, actor_id=_actor_id(request))
    return JsonResponse(
        {
            "entry": serialize_entry(result.entry),
            "touched": result.touched,
            "queued": len(result.queued),
        },
        status=201,
    )


def _import_response(result: services.ImportResult) -> JsonResponse:
    return JsonResponse(
        {
            "success": True,
            "importedCount": result.record_count,
            "byType": result.by_type,
            "touched": result.touched,
            "queued": len(result.queued),
        },
        status=201,
    )


@csrf_exempt
def ledger_import_view(request: HttpRequest) -> JsonResponse:
    if request.method != "POST":
        return _method_not_allowed()

    def handler(company_id):
        body = _parse_json_body(request)
        result = services.import_movements(company_id, _records_from_body(body), actor_id=_actor_id(request))
        return _import_response(result)

    return _dispatch(request, handler)


@csrf_exempt
def beginning_data_import_view(request: HttpRequest) -> JsonResponse:
    if request.method != "POST":
        return _method_not_allowed()

    def handler(company_id):
        body = _parse_json_body(request)
        result = services.import_opening_balances(company_id, _records_from_body(body), actor_id=_actor_id(request))
        return _import_response(result)

    return _dispatch(request, handler)


@csrf_exempt
def beginning_data_validate_view(request: HttpRequest) -> JsonResponse:
    if request.method != "POST":
        return _method_not_allowed()

    def handler(company_id):
        body = _parse_json_body(request)
        outcomes = services.validate_opening_balances(company_id, _records_from_body(body))
        results = [{"key": key, **outcome.as_dict()} for key, outcome in outcomes.items()]
        return JsonResponse({"valid": all(o.valid for o in outcomes.values()), "results": results})

    return _dispatch(request, handler)


@csrf_exempt
def stock_availability_view(request: HttpRequest) -> JsonResponse:
    if request.method != "POST":
        return _method_not_allowed()

    def handler(company_id):
        check = services.stock_availability(company_id, _parse_json_body(request))
        return JsonResponse({"data": check.as_dict()})

    return _dispatch(request, handler)
