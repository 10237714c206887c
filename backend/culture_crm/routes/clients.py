# Overview: Flask API routes for client-scoped lookups; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify

from ..extensions import db
from ..models import Client
from ..services import invoice_service
from ..validation import DOMAIN_ERRORS, NotFoundError, coerce_int, error_payload


clients_bp = Blueprint("clients", __name__, url_prefix="/api/clients")


@clients_bp.get("/<int:client_id>/invoices")
def client_invoices_route(client_id: int):
    """
    Most recent invoices of a client.

    Query params:
    - limit: int (default 10, max 100)
    """
    try:
        if db.session.get(Client, client_id) is None:
            raise NotFoundError(f"Client {client_id} not found")

        limit = coerce_int(request.args.get("limit"), "limit") or 10
        invoices = invoice_service.list_client_invoices(client_id, limit=limit)
        return jsonify({"data": [inv.to_dict() for inv in invoices], "count": len(invoices)}), 200

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
