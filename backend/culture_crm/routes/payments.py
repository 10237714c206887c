# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

# backend/culture_crm/routes/payments.py
"""
Payment Processing API Routes

WHY: Record client payments and keep invoice status in step with them.

DESIGN:
- Cash payments are completed on creation, other methods wait for
  confirmation through PATCH
- Confirming, refunding or deleting a payment re-derives the invoice status
- Amounts travel as decimal strings
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import payment_service
from ..models.billing import VALID_PAYMENT_METHODS, VALID_PAYMENT_STATUSES, VALID_PAYMENT_TYPES
from ..validation import (
    UNSET,
    DOMAIN_ERRORS,
    coerce_choice,
    coerce_date,
    coerce_decimal,
    coerce_int,
    coerce_str,
    error_payload,
    require_fields,
    require_payload,
)


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _query_int(name: str):
    return coerce_int(request.args.get(name), name)


# =============================================================================
# PAYMENT CREATION
# =============================================================================

@payments_bp.post("")
def create_payment_route():
    """
    Record a payment.

    Request body:
    {
        "clientId": 34,
        "amount": "400.00",
        "paymentMethod": "CASH",
        "paymentType": "SUBSCRIPTION",
        "invoiceId": 7,  (optional)
        "subscriptionId": 56,  (optional)
        "rentalId": 3,  (optional)
        "notes": "...",  (optional)
        "transactionId": "..."  (optional)
    }

    Returns:
        201: Payment created
        400: Invalid input, cancelled invoice, or amount exceeds unpaid balance
        404: Client or invoice not found
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "clientId", "amount", "paymentMethod", "paymentType")

        payment = payment_service.create_payment(
            client_id=coerce_int(data.get("clientId"), "clientId"),
            amount=coerce_decimal(data.get("amount"), "amount"),
            payment_method=coerce_choice(data.get("paymentMethod"), "paymentMethod", VALID_PAYMENT_METHODS),
            payment_type=coerce_choice(data.get("paymentType"), "paymentType", VALID_PAYMENT_TYPES),
            invoice_id=coerce_int(data.get("invoiceId"), "invoiceId"),
            subscription_id=coerce_int(data.get("subscriptionId"), "subscriptionId"),
            rental_id=coerce_int(data.get("rentalId"), "rentalId"),
            notes=coerce_str(data.get("notes"), "notes"),
            transaction_id=coerce_str(data.get("transactionId"), "transactionId", max_length=128),
        )
        return jsonify(payment.to_dict()), 201

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT UPDATES
# =============================================================================

@payments_bp.patch("/<int:payment_id>")
def update_payment_route(payment_id: int):
    """
    Confirm, refund or annotate a payment.

    Request body (all optional):
    {
        "status": "COMPLETED",
        "notes": "...",  (null clears)
        "transactionId": "..."
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))

        payment = payment_service.update_payment(
            payment_id,
            status=coerce_choice(data.get("status"), "status", VALID_PAYMENT_STATUSES),
            notes=coerce_str(data.get("notes"), "notes") if "notes" in data else UNSET,
            transaction_id=coerce_str(data.get("transactionId"), "transactionId", max_length=128),
        )
        return jsonify(payment.to_dict()), 200

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.delete("/<int:payment_id>")
def delete_payment_route(payment_id: int):
    try:
        return jsonify(payment_service.remove_payment(payment_id)), 200

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@payments_bp.get("")
def list_payments_route():
    """
    List payments, newest first.

    Query params (all optional):
    - clientId, invoiceId, subscriptionId, rentalId: int
    - paymentMethod, paymentType, status
    - dateFrom, dateTo: YYYY-MM-DD, inclusive, on the creation date
    - page: int (default 1), limit: int (default 50, max 200)
    """
    try:
        result = payment_service.find_all(
            client_id=_query_int("clientId"),
            invoice_id=_query_int("invoiceId"),
            subscription_id=_query_int("subscriptionId"),
            rental_id=_query_int("rentalId"),
            payment_method=coerce_choice(request.args.get("paymentMethod"), "paymentMethod", VALID_PAYMENT_METHODS),
            payment_type=coerce_choice(request.args.get("paymentType"), "paymentType", VALID_PAYMENT_TYPES),
            status=coerce_choice(request.args.get("status"), "status", VALID_PAYMENT_STATUSES),
            date_from=coerce_date(request.args.get("dateFrom"), "dateFrom"),
            date_to=coerce_date(request.args.get("dateTo"), "dateTo"),
            page=_query_int("page"),
            limit=_query_int("limit"),
        )
        return jsonify(result), 200

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<int:payment_id>")
def get_payment_route(payment_id: int):
    try:
        return jsonify(payment_service.find_one(payment_id).to_dict()), 200
    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
