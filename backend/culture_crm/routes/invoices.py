# Overview: Flask API routes for invoice operations; parses input and returns JSON responses.

# backend/culture_crm/routes/invoices.py
"""
Invoice API Routes

DESIGN:
- Create invoices with priced lines (acting user recorded as creator)
- Manual edits and cancellation require the acting user and the version
  last read; they are written to the invoice audit log. A stale
  version answers 409 with the current invoice attached
- Paid and partially paid invoices cannot be deleted
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import invoice_service, payment_service
from ..decorators import require_acting_user
from ..validation import (
    DOMAIN_ERRORS,
    ValidationError,
    coerce_int,
    coerce_str,
    error_payload,
    require_fields,
    require_payload,
)


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


# camelCase request keys -> service field names
ITEM_FIELDS = {
    "serviceType": "service_type",
    "serviceName": "service_name",
    "serviceDescription": "service_description",
    "quantity": "quantity",
    "unitPrice": "unit_price",
    "basePrice": "base_price",
    "vatRate": "vat_rate",
    "discountPercent": "discount_percent",
    "writeOffTiming": "write_off_timing",
}

PATCH_FIELDS = {
    "status": "status",
    "dueDate": "due_date",
    "notes": "notes",
}


def _item_from_payload(raw) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError("Each item must be an object")
    return {field: raw[key] for key, field in ITEM_FIELDS.items() if key in raw}


def _required_version(data: dict):
    version = coerce_int(data.get("version"), "version")
    if version is None:
        raise ValidationError("version is required")
    return version


@invoices_bp.post("")
@require_acting_user
def create_invoice_route():
    """
    Create an invoice.

    Request body:
    {
        "clientId": 34,
        "subscriptionId": 56,  (optional)
        "rentalId": 3,  (optional)
        "discountAmount": "50.00",  (optional)
        "dueDate": "2024-05-01",  (optional)
        "notes": "...",  (optional)
        "items": [
            {"serviceName": "Ceramics, 8 visits", "basePrice": "4000.00",
             "quantity": 1, "vatRate": 0, "writeOffTiming": "ON_USE"}
        ]
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "clientId")

        items = data.get("items")
        if not isinstance(items, list):
            raise ValidationError("items must be a list")

        invoice = invoice_service.create_invoice(
            client_id=coerce_int(data.get("clientId"), "clientId"),
            items=[_item_from_payload(raw) for raw in items],
            created_by=g.current_user.id,
            subscription_id=coerce_int(data.get("subscriptionId"), "subscriptionId"),
            rental_id=coerce_int(data.get("rentalId"), "rentalId"),
            discount_amount=data.get("discountAmount"),
            due_date=data.get("dueDate"),
            notes=data.get("notes"),
        )
        return jsonify(invoice.to_dict(include_items=True)), 201

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("")
def list_invoices_route():
    try:
        result = invoice_service.find_all(
            client_id=coerce_int(request.args.get("clientId"), "clientId"),
            status=request.args.get("status"),
            page=coerce_int(request.args.get("page"), "page"),
            limit=coerce_int(request.args.get("limit"), "limit"),
        )
        return jsonify(result), 200
    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code


@invoices_bp.get("/<int:invoice_id>")
def get_invoice_route(invoice_id: int):
    try:
        invoice = invoice_service.get_invoice(invoice_id)
        return jsonify(invoice.to_dict(include_items=True, include_audit=True)), 200
    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code


@invoices_bp.patch("/<int:invoice_id>")
@require_acting_user
def update_invoice_route(invoice_id: int):
    """
    Edit status, due date or notes.

    Request body:
    {
        "version": 3,
        "status": "OVERDUE",  (optional)
        "dueDate": "2024-06-01",  (optional)
        "notes": "..."  (optional)
    }

    Returns:
        200: Updated invoice
        409: VERSION_CONFLICT, with expected/current version and current invoice
    """
    try:
        data = require_payload(request.get_json(silent=True))
        version = _required_version(data)
        patch = {field: data[key] for key, field in PATCH_FIELDS.items() if key in data}

        invoice = invoice_service.update_invoice(
            invoice_id, patch, expected_version=version, acting_user_id=g.current_user.id
        )
        return jsonify(invoice.to_dict(include_items=True)), 200

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.post("/<int:invoice_id>/cancel")
@require_acting_user
def cancel_invoice_route(invoice_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        invoice = invoice_service.cancel_invoice(
            invoice_id,
            expected_version=_required_version(data),
            acting_user_id=g.current_user.id,
            reason=coerce_str(data.get("reason"), "reason"),
        )
        return jsonify(invoice.to_dict(include_items=True)), 200

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.delete("/<int:invoice_id>")
def delete_invoice_route(invoice_id: int):
    try:
        return jsonify(invoice_service.delete_invoice(invoice_id)), 200

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("/<int:invoice_id>/payments/summary")
def invoice_payment_summary_route(invoice_id: int):
    try:
        return jsonify(payment_service.get_invoice_payment_summary(invoice_id)), 200
    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
