# Overview: Service-layer operations for payment; encapsulates business logic and database work.

"""
Payment Processing Service

WHY: Clients pay invoices in one or more installments, by cash, card, bank
transfer or online. The invoice status has to follow the money exactly.

DESIGN PRINCIPLES:
- Invoice status is derived, never adjusted: every change re-sums the
  COMPLETED payments of the invoice and applies
      paid >= total -> PAID, paid > 0 -> PARTIALLY_PAID, else PENDING
- The re-sum runs in the same transaction as the payment write, with the
  invoice row locked
- The invoice version column is bumped by the ORM on every status change;
  a concurrent writer fails with StaleDataError and is retried
- CANCELLED invoices are never re-derived
- Money is Decimal end to end
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from decimal import Decimal

from sqlalchemy import func

from ..extensions import db
from ..models import Client, Invoice, Payment
from ..models.billing import (
    CENT,
    INVOICE_STATUS_CANCELLED,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_PARTIALLY_PAID,
    INVOICE_STATUS_PENDING,
    PAYMENT_METHOD_CASH,
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_PENDING,
    VALID_PAYMENT_METHODS,
    VALID_PAYMENT_STATUSES,
    VALID_PAYMENT_TYPES,
)
from ..validation import (
    CODE_AMOUNT_EXCEEDS_UNPAID,
    CODE_INVOICE_CANCELLED,
    UNSET,
    NotFoundError,
    ValidationError,
    validate_date_range,
)
from culture_crm.time_utils import utcnow
from . import client_activity_service
from .concurrency import lock_for_update, run_with_retry
from .pagination import paginate


# =============================================================================
# INVOICE STATUS DERIVATION
# =============================================================================

def derive_invoice_status(total_paid: Decimal, total_amount: Decimal) -> str:
    if total_paid >= total_amount:
        return INVOICE_STATUS_PAID
    if total_paid > 0:
        return INVOICE_STATUS_PARTIALLY_PAID
    return INVOICE_STATUS_PENDING


def get_total_paid(invoice_id: int) -> Decimal:
    """Sum of COMPLETED payment amounts for an invoice."""
    total = db.session.query(
        func.coalesce(func.sum(Payment.amount), 0)
    ).filter(
        Payment.invoice_id == invoice_id,
        Payment.status == PAYMENT_STATUS_COMPLETED,
    ).scalar()
    return Decimal(str(total or 0)).quantize(CENT)


def recalculate_invoice_status(invoice_id: int) -> Invoice | None:
    """
    Re-derive an invoice's status from its COMPLETED payments.

    Only writes when the status actually changes. paid_at is set when the
    invoice becomes PAID and cleared otherwise. Must run inside the caller's
    transaction.
    """
    invoice = lock_for_update(db.session.query(Invoice).filter(Invoice.id == invoice_id)).first()
    if invoice is None or invoice.status == INVOICE_STATUS_CANCELLED:
        return invoice

    total_paid = get_total_paid(invoice.id)
    new_status = derive_invoice_status(total_paid, Decimal(invoice.total_amount))

    if new_status != invoice.status:
        invoice.status = new_status
        invoice.paid_at = utcnow() if new_status == INVOICE_STATUS_PAID else None
        db.session.flush()

    return invoice


# =============================================================================
# PAYMENT CREATION
# =============================================================================

def _require_choice(value: str, field: str, choices) -> None:
    if value not in choices:
        raise ValidationError(f"Invalid {field}: {value}. Must be one of {list(choices)}")


def create_payment(
    client_id: int,
    amount: Decimal,
    payment_method: str,
    payment_type: str,
    *,
    invoice_id: int | None = None,
    subscription_id: int | None = None,
    rental_id: int | None = None,
    notes: str | None = None,
    transaction_id: str | None = None,
) -> Payment:
    """
    Record a payment from a client, optionally against an invoice.

    Args:
        client_id: Paying client
        amount: Positive Decimal amount
        payment_method: CASH, CARD, BANK_TRANSFER or ONLINE
        payment_type: SUBSCRIPTION, SINGLE_VISIT, RENTAL, INDIVIDUAL_LESSON or OTHER
        invoice_id: Invoice being paid (optional)

    Returns:
        Payment record. CASH payments are COMPLETED immediately, every other
        method stays PENDING until confirmed.

    Raises:
        NotFoundError: Client or invoice missing
        ValidationError: Invoice cancelled, or amount exceeds the unpaid balance
    """
    _require_choice(payment_method, "payment method", VALID_PAYMENT_METHODS)
    _require_choice(payment_type, "payment type", VALID_PAYMENT_TYPES)
    if amount is None or amount <= 0:
        raise ValidationError("Payment amount must be positive")

    def _op():
        if db.session.get(Client, client_id) is None:
            raise NotFoundError(f"Client {client_id} not found")

        if invoice_id is not None:
            invoice = lock_for_update(db.session.query(Invoice).filter(Invoice.id == invoice_id)).first()
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} not found")

            if invoice.status == INVOICE_STATUS_CANCELLED:
                raise ValidationError("Cannot pay a cancelled invoice", code=CODE_INVOICE_CANCELLED)

            unpaid = Decimal(invoice.total_amount) - get_total_paid(invoice.id)
            if amount > unpaid:
                raise ValidationError(
                    f"Payment amount {amount} exceeds unpaid amount {unpaid.quantize(CENT)}",
                    code=CODE_AMOUNT_EXCEEDS_UNPAID,
                )

        status = PAYMENT_STATUS_COMPLETED if payment_method == PAYMENT_METHOD_CASH else PAYMENT_STATUS_PENDING

        payment = Payment(
            client_id=client_id,
            invoice_id=invoice_id,
            subscription_id=subscription_id,
            rental_id=rental_id,
            amount=amount,
            payment_method=payment_method,
            payment_type=payment_type,
            status=status,
            notes=notes,
            transaction_id=transaction_id,
            created_at=utcnow(),
        )
        db.session.add(payment)
        db.session.flush()

        if status == PAYMENT_STATUS_COMPLETED and invoice_id is not None:
            recalculate_invoice_status(invoice_id)

        db.session.commit()
        return payment

    payment = run_with_retry(_op)
    client_activity_service.reactivate_client_if_needed(client_id)
    return payment


# =============================================================================
# PAYMENT UPDATES
# =============================================================================

def update_payment(
    payment_id: int,
    *,
    status: str | None = None,
    notes=UNSET,
    transaction_id: str | None = None,
) -> Payment:
    """
    Confirm, refund or annotate a payment.

    Any status change into or out of COMPLETED re-derives the invoice
    status in the same transaction (confirmation, refund, failure after
    confirmation). Other changes are plain field updates.

    Raises:
        NotFoundError: Payment missing
        ValidationError: Unknown status
    """
    if status is not None:
        _require_choice(status, "payment status", VALID_PAYMENT_STATUSES)

    def _op():
        payment = lock_for_update(db.session.query(Payment).filter(Payment.id == payment_id)).first()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")

        old_status = payment.status
        new_status = status or old_status

        payment.status = new_status
        if notes is not UNSET:
            payment.notes = notes
        if transaction_id is not None:
            payment.transaction_id = transaction_id
        db.session.flush()

        was_completed = old_status == PAYMENT_STATUS_COMPLETED
        is_completed = new_status == PAYMENT_STATUS_COMPLETED
        if payment.invoice_id is not None and was_completed != is_completed:
            recalculate_invoice_status(payment.invoice_id)

        db.session.commit()
        return payment

    return run_with_retry(_op)


def remove_payment(payment_id: int) -> dict:
    """
    Delete a payment and re-derive its invoice's status.

    Raises:
        NotFoundError: Payment missing
    """
    def _op():
        payment = lock_for_update(db.session.query(Payment).filter(Payment.id == payment_id)).first()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")

        invoice_id = payment.invoice_id
        db.session.delete(payment)
        db.session.flush()

        if invoice_id is not None:
            recalculate_invoice_status(invoice_id)

        db.session.commit()
        return {"message": "Payment deleted", "id": payment_id, "invoice_id": invoice_id}

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def find_all(
    *,
    client_id: int | None = None,
    invoice_id: int | None = None,
    subscription_id: int | None = None,
    rental_id: int | None = None,
    payment_method: str | None = None,
    payment_type: str | None = None,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict:
    """
    Filtered, paginated payment listing, newest first.

    date_from / date_to bound the creation date inclusively.
    """
    validate_date_range(date_from, date_to)

    query = db.session.query(Payment)
    if client_id:
        query = query.filter(Payment.client_id == client_id)
    if invoice_id:
        query = query.filter(Payment.invoice_id == invoice_id)
    if subscription_id:
        query = query.filter(Payment.subscription_id == subscription_id)
    if rental_id:
        query = query.filter(Payment.rental_id == rental_id)
    if payment_method:
        query = query.filter(Payment.payment_method == payment_method)
    if payment_type:
        query = query.filter(Payment.payment_type == payment_type)
    if status:
        query = query.filter(Payment.status == status)
    if date_from:
        query = query.filter(Payment.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        query = query.filter(Payment.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    query = query.order_by(Payment.created_at.desc(), Payment.id.desc())
    return paginate(query, page, limit)


def find_one(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def get_invoice_payment_summary(invoice_id: int) -> dict:
    """Total, paid and unpaid amounts of an invoice with its current status."""
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")

    total = Decimal(invoice.total_amount).quantize(CENT)
    paid = get_total_paid(invoice.id)
    unpaid = max(total - paid, Decimal("0.00"))

    payments = (
        db.session.query(Payment)
        .filter(Payment.invoice_id == invoice.id)
        .order_by(Payment.created_at.asc(), Payment.id.asc())
        .all()
    )

    return {
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "status": invoice.status,
        "version": invoice.version,
        "total_amount": str(total),
        "paid_amount": str(paid),
        "unpaid_amount": str(unpaid.quantize(CENT)),
        "payments": [p.to_dict() for p in payments],
    }
