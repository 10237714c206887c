# Overview: Service-layer operations for invoice; encapsulates business logic and database work.

"""
Invoice Service

WHY: Invoices bill clients for subscriptions, rentals and one-off services.
Their payment status is owned by payment_service; this module creates
them, edits the parts staff are allowed to edit, and cancels or deletes
them.

Every mutation of an existing invoice requires the version the caller last
read. A stale version is rejected with OptimisticLockError before anything
is written.
"""

from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from ..extensions import db
from ..models import Client, Invoice, InvoiceAuditLog, InvoiceItem, Payment, Subscription
from ..models.billing import (
    AUDIT_CANCELLED,
    AUDIT_CREATED,
    AUDIT_STATUS_CHANGED,
    AUDIT_UPDATED,
    CENT,
    INVOICE_STATUS_CANCELLED,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_PARTIALLY_PAID,
    INVOICE_STATUS_PENDING,
    SERVICE_TYPES,
    VALID_INVOICE_STATUSES,
    VALID_WRITE_OFF_TIMINGS,
    WRITE_OFF_CANCELLED,
    WRITE_OFF_COMPLETED,
    WRITE_OFF_ON_SALE,
    WRITE_OFF_PENDING,
)
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    coerce_choice,
    coerce_date,
    coerce_decimal,
    coerce_int,
    coerce_str,
)
from culture_crm.time_utils import to_iso_date, utcnow
from .concurrency import check_version, lock_for_update, run_with_retry
from .pagination import paginate


INVOICE_NUMBER_PREFIX = "INV"
HUNDRED = Decimal("100")


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# =============================================================================
# NUMBERING & TOTALS
# =============================================================================

def generate_invoice_number(on_date: date | None = None) -> str:
    """
    Next number of the day: INV-YYYYMMDD-NNNN, sequence restarting daily.
    """
    on_date = on_date or utcnow().date()
    prefix = f"{INVOICE_NUMBER_PREFIX}-{on_date.strftime('%Y%m%d')}-"

    last = (
        db.session.query(Invoice.invoice_number)
        .filter(Invoice.invoice_number.like(f"{prefix}%"))
        .order_by(Invoice.invoice_number.desc())
        .first()
    )

    sequence = 1
    if last:
        sequence = int(last[0].rsplit("-", 1)[1]) + 1

    return f"{prefix}{sequence:04d}"


def _normalize_item(raw: dict, index: int) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError(f"items[{index}] must be an object")

    name = coerce_str(raw.get("service_name"), f"items[{index}].service_name", max_length=255)
    if not name:
        raise ValidationError(f"items[{index}].service_name is required")

    quantity = coerce_int(raw.get("quantity", 1), f"items[{index}].quantity")
    if quantity is None or quantity < 1:
        raise ValidationError(f"items[{index}].quantity must be >= 1")

    base_price = coerce_decimal(raw.get("base_price"), f"items[{index}].base_price", allow_zero=True)
    if base_price is None:
        raise ValidationError(f"items[{index}].base_price is required")

    unit_price = coerce_decimal(raw.get("unit_price"), f"items[{index}].unit_price", allow_zero=True)
    vat_rate = coerce_decimal(raw.get("vat_rate", 0), f"items[{index}].vat_rate", allow_zero=True)
    discount_percent = coerce_decimal(
        raw.get("discount_percent", 0), f"items[{index}].discount_percent", allow_zero=True
    )
    if vat_rate > HUNDRED or discount_percent > HUNDRED:
        raise ValidationError(f"items[{index}] percentages cannot exceed 100")

    return {
        "service_type": coerce_choice(raw.get("service_type") or "SUBSCRIPTION", "service type", SERVICE_TYPES),
        "service_name": name,
        "service_description": coerce_str(raw.get("service_description"), "service_description"),
        "quantity": quantity,
        "unit_price": unit_price if unit_price is not None else base_price,
        "base_price": base_price,
        "vat_rate": vat_rate,
        "discount_percent": discount_percent,
        "write_off_timing": coerce_choice(
            raw.get("write_off_timing") or WRITE_OFF_ON_SALE, "write-off timing", VALID_WRITE_OFF_TIMINGS
        ),
    }


def calculate_totals(items: list[dict], discount_amount: Decimal = Decimal("0")) -> dict:
    """
    Price every line and the invoice as a whole.

    Per line:
        vat = base * rate% * qty
        discount = base * qty * pct%
        total = base * qty + vat - discount
    Invoice:
        subtotal = sum(base * qty)
        total_amount = subtotal + sum(vat) - invoice discount
    """
    subtotal = Decimal("0")
    vat_total = Decimal("0")
    priced = []

    for item in items:
        gross = item["base_price"] * item["quantity"]
        vat_amount = _round(item["base_price"] * item["vat_rate"] / HUNDRED * item["quantity"])
        line_discount = _round(gross * item["discount_percent"] / HUNDRED)

        subtotal += gross
        vat_total += vat_amount
        priced.append({
            **item,
            "vat_amount": vat_amount,
            "discount_amount": line_discount,
            "total_price": _round(gross + vat_amount - line_discount),
        })

    total_amount = _round(subtotal + vat_total - discount_amount)
    if total_amount < 0:
        raise ValidationError("Invoice discount cannot exceed the invoice total")

    return {
        "items": priced,
        "subtotal": _round(subtotal),
        "total_amount": total_amount,
    }


# =============================================================================
# CREATION
# =============================================================================

def create_invoice(
    client_id: int,
    items: list[dict],
    created_by: int | None,
    *,
    subscription_id: int | None = None,
    rental_id: int | None = None,
    discount_amount=None,
    due_date=None,
    notes: str | None = None,
) -> Invoice:
    """
    Issue a PENDING invoice with its lines.

    ON_SALE lines are written off immediately (COMPLETED); ON_USE lines
    start PENDING and follow the subscription's attendance.

    Raises:
        NotFoundError: Client or subscription missing
        ValidationError: Bad line data, or subscription of another client
    """
    if not items:
        raise ValidationError("Invoice must have at least one item")

    normalized = [_normalize_item(raw, i) for i, raw in enumerate(items)]
    discount = coerce_decimal(discount_amount, "discount_amount", allow_zero=True) or Decimal("0")
    due = coerce_date(due_date, "due_date")
    totals = calculate_totals(normalized, discount)

    def _op():
        if db.session.get(Client, client_id) is None:
            raise NotFoundError(f"Client {client_id} not found")

        if subscription_id is not None:
            subscription = db.session.get(Subscription, subscription_id)
            if subscription is None:
                raise NotFoundError(f"Subscription {subscription_id} not found")
            if subscription.client_id != client_id:
                raise ValidationError("Subscription belongs to another client")

        invoice = Invoice(
            invoice_number=generate_invoice_number(),
            client_id=client_id,
            subscription_id=subscription_id,
            rental_id=rental_id,
            subtotal=totals["subtotal"],
            discount_amount=discount,
            total_amount=totals["total_amount"],
            status=INVOICE_STATUS_PENDING,
            due_date=due,
            notes=notes,
            created_by=created_by,
            created_at=utcnow(),
        )

        for item in totals["items"]:
            invoice.items.append(InvoiceItem(
                write_off_status=(
                    WRITE_OFF_COMPLETED if item["write_off_timing"] == WRITE_OFF_ON_SALE else WRITE_OFF_PENDING
                ),
                **item,
            ))
        if created_by is not None:
            _record_audit(invoice, created_by, AUDIT_CREATED, "invoice", new_value=invoice.invoice_number)

        db.session.add(invoice)
        db.session.commit()
        return invoice

    return run_with_retry(_op)


# =============================================================================
# VERSIONED UPDATES
# =============================================================================

def _locked_invoice(invoice_id: int) -> Invoice:
    invoice = lock_for_update(db.session.query(Invoice).filter(Invoice.id == invoice_id)).first()
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


UPDATABLE_FIELDS = ("status", "due_date", "notes")


def _audit_value(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, date):
        return to_iso_date(value)
    return str(value)


def _record_audit(
    invoice: Invoice,
    user_id: int,
    action: str,
    field_name: str,
    old_value=None,
    new_value=None,
    reason: str | None = None,
) -> None:
    invoice.audit_logs.append(InvoiceAuditLog(
        action=action,
        field_name=field_name,
        old_value=_audit_value(old_value),
        new_value=_audit_value(new_value),
        reason=reason,
        user_id=user_id,
        created_at=utcnow(),
    ))


def update_invoice(
    invoice_id: int,
    data: dict,
    expected_version: int | None,
    *,
    acting_user_id: int | None = None,
) -> Invoice:
    """
    Manual edit of status, due date or notes.

    paid_at follows the status: stamped when the invoice becomes PAID,
    cleared when it is set to anything else. Each changed field is written
    to the audit log when an acting user is given.

    Raises:
        NotFoundError: Invoice missing
        OptimisticLockError: expected_version is missing or stale
        ValidationError: Unknown status
    """
    patch = {}
    if "status" in data:
        patch["status"] = coerce_choice(data["status"], "invoice status", VALID_INVOICE_STATUSES)
    if "due_date" in data:
        patch["due_date"] = coerce_date(data["due_date"], "due_date")
    if "notes" in data:
        patch["notes"] = coerce_str(data["notes"], "notes")

    def _op():
        invoice = _locked_invoice(invoice_id)
        check_version(invoice, expected_version, "invoice")

        for field, value in patch.items():
            old_value = getattr(invoice, field)
            if old_value == value:
                continue
            setattr(invoice, field, value)
            if acting_user_id is not None:
                action = AUDIT_STATUS_CHANGED if field == "status" else AUDIT_UPDATED
                _record_audit(invoice, acting_user_id, action, field, old_value, value)

        if "status" in patch:
            if patch["status"] != INVOICE_STATUS_PAID:
                invoice.paid_at = None
            elif invoice.paid_at is None:
                invoice.paid_at = utcnow()

        db.session.commit()
        return invoice

    return run_with_retry(_op)


def cancel_invoice(
    invoice_id: int,
    expected_version: int | None,
    *,
    acting_user_id: int | None = None,
    reason: str | None = None,
) -> Invoice:
    """
    Cancel an invoice. Lines not yet written off are cancelled with it.

    A cancelled invoice is never re-derived from payments again.
    """
    def _op():
        invoice = _locked_invoice(invoice_id)
        check_version(invoice, expected_version, "invoice")

        if invoice.status == INVOICE_STATUS_CANCELLED:
            raise ConflictError("Invoice is already cancelled")

        if acting_user_id is not None:
            _record_audit(
                invoice, acting_user_id, AUDIT_CANCELLED, "status",
                invoice.status, INVOICE_STATUS_CANCELLED, reason=reason,
            )
        invoice.status = INVOICE_STATUS_CANCELLED
        invoice.paid_at = None
        for item in invoice.items:
            if item.write_off_status != WRITE_OFF_COMPLETED:
                item.write_off_status = WRITE_OFF_CANCELLED

        db.session.commit()
        return invoice

    return run_with_retry(_op)


def delete_invoice(invoice_id: int) -> dict:
    """
    Delete an invoice that has not been paid.

    Pending payments that referenced it are detached, not deleted.

    Raises:
        NotFoundError: Invoice missing
        ConflictError: Invoice is PAID or PARTIALLY_PAID
    """
    def _op():
        invoice = _locked_invoice(invoice_id)
        if invoice.status in (INVOICE_STATUS_PAID, INVOICE_STATUS_PARTIALLY_PAID):
            raise ConflictError("Cannot delete paid or partially paid invoice")

        db.session.query(Payment).filter(Payment.invoice_id == invoice.id).update(
            {Payment.invoice_id: None},
            synchronize_session=False,
        )
        db.session.delete(invoice)
        db.session.commit()
        return {"message": "Invoice deleted", "id": invoice_id}

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def list_client_invoices(client_id: int, limit: int = 10) -> list[Invoice]:
    """Most recent invoices of a client."""
    limit = min(max(limit or 10, 1), 100)
    return (
        db.session.query(Invoice)
        .filter(Invoice.client_id == client_id)
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .limit(limit)
        .all()
    )


def find_all(
    *,
    client_id: int | None = None,
    status: str | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict:
    query = db.session.query(Invoice)
    if client_id:
        query = query.filter(Invoice.client_id == client_id)
    if status:
        query = query.filter(Invoice.status == coerce_choice(status, "invoice status", VALID_INVOICE_STATUSES))
    query = query.order_by(Invoice.created_at.desc(), Invoice.id.desc())
    return paginate(query, page, limit)
