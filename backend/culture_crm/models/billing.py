from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from culture_crm.time_utils import to_iso_date, to_utc_z, utcnow


CENT = Decimal("0.01")


def money(value) -> str | None:
    """Serialize a Numeric amount as a 2-decimal string."""
    if value is None:
        return None
    return str(Decimal(value).quantize(CENT))


# =============================================================================
# INVOICE STATUS (CONSTANTS)
# =============================================================================

INVOICE_STATUS_DRAFT = "DRAFT"
INVOICE_STATUS_PENDING = "PENDING"
INVOICE_STATUS_PARTIALLY_PAID = "PARTIALLY_PAID"
INVOICE_STATUS_PAID = "PAID"
INVOICE_STATUS_OVERDUE = "OVERDUE"
INVOICE_STATUS_CANCELLED = "CANCELLED"

VALID_INVOICE_STATUSES = (
    INVOICE_STATUS_DRAFT,
    INVOICE_STATUS_PENDING,
    INVOICE_STATUS_PARTIALLY_PAID,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_OVERDUE,
    INVOICE_STATUS_CANCELLED,
)


# =============================================================================
# WRITE-OFF (CONSTANTS)
# =============================================================================

WRITE_OFF_ON_SALE = "ON_SALE"
WRITE_OFF_ON_USE = "ON_USE"

VALID_WRITE_OFF_TIMINGS = (WRITE_OFF_ON_SALE, WRITE_OFF_ON_USE)

WRITE_OFF_PENDING = "PENDING"
WRITE_OFF_IN_PROGRESS = "IN_PROGRESS"
WRITE_OFF_COMPLETED = "COMPLETED"
WRITE_OFF_CANCELLED = "CANCELLED"

SERVICE_TYPES = ("SUBSCRIPTION", "RENTAL", "SINGLE_SESSION", "INDIVIDUAL_LESSON", "OTHER")


# =============================================================================
# INVOICE AUDIT (CONSTANTS)
# =============================================================================

AUDIT_CREATED = "CREATED"
AUDIT_UPDATED = "UPDATED"
AUDIT_STATUS_CHANGED = "STATUS_CHANGED"
AUDIT_CANCELLED = "CANCELLED"


# =============================================================================
# PAYMENT (CONSTANTS)
# =============================================================================

PAYMENT_METHOD_CASH = "CASH"
PAYMENT_METHOD_CARD = "CARD"
PAYMENT_METHOD_BANK_TRANSFER = "BANK_TRANSFER"
PAYMENT_METHOD_ONLINE = "ONLINE"

VALID_PAYMENT_METHODS = (
    PAYMENT_METHOD_CASH,
    PAYMENT_METHOD_CARD,
    PAYMENT_METHOD_BANK_TRANSFER,
    PAYMENT_METHOD_ONLINE,
)

VALID_PAYMENT_TYPES = ("SUBSCRIPTION", "SINGLE_VISIT", "RENTAL", "INDIVIDUAL_LESSON", "OTHER")

PAYMENT_STATUS_PENDING = "PENDING"
PAYMENT_STATUS_COMPLETED = "COMPLETED"
PAYMENT_STATUS_REFUNDED = "REFUNDED"
PAYMENT_STATUS_FAILED = "FAILED"

VALID_PAYMENT_STATUSES = (
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_FAILED,
)


class Invoice(db.Model):
    """
    Bill issued to a client.

    status for PENDING / PARTIALLY_PAID / PAID is derived from COMPLETED
    payments, never edited incrementally. version is the optimistic lock:
    SQLAlchemy bumps it on every UPDATE and fails stale writers with
    StaleDataError.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.Index("ix_invoices_client_status", "client_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(32), nullable=False, unique=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True, index=True)
    rental_id = db.Column(db.Integer, nullable=True, index=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=INVOICE_STATUS_PENDING, index=True)
    due_date = db.Column(db.Date, nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    version = db.Column(db.Integer, nullable=False, default=1)

    client = db.relationship("Client", backref=db.backref("invoices", lazy=True))
    subscription = db.relationship("Subscription", backref=db.backref("invoices", lazy=True))
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} number={self.invoice_number} status={self.status}>"

    def to_dict(self, include_items: bool = False, include_audit: bool = False) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "client_id": self.client_id,
            "subscription_id": self.subscription_id,
            "rental_id": self.rental_id,
            "subtotal": money(self.subtotal),
            "discount_amount": money(self.discount_amount),
            "total_amount": money(self.total_amount),
            "status": self.status,
            "due_date": to_iso_date(self.due_date),
            "paid_at": to_utc_z(self.paid_at),
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "version": self.version,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        if include_audit:
            data["audit_logs"] = [entry.to_dict() for entry in self.audit_logs]
        return data


class InvoiceAuditLog(db.Model):
    """
    Append-only trail of manual changes to an invoice.

    ACTIONS:
    - CREATED: Invoice issued (new_value = invoice number)
    - UPDATED: Due date or notes edited
    - STATUS_CHANGED: Status set by hand
    - CANCELLED: Invoice cancelled, with optional reason

    One row per changed field. Status changes driven by payments are not
    logged here. Rows go away only with their invoice.
    """
    __tablename__ = "invoice_audit_logs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    action = db.Column(db.String(32), nullable=False)
    field_name = db.Column(db.String(64), nullable=False)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    invoice = db.relationship(
        "Invoice",
        backref=db.backref("audit_logs", lazy=True, order_by="InvoiceAuditLog.id", cascade="all, delete-orphan"),
    )
    user = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "action": self.action,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "reason": self.reason,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
            "user": {
                "id": self.user.id,
                "first_name": self.user.first_name,
                "last_name": self.user.last_name,
            } if self.user else None,
        }


class InvoiceItem(db.Model):
    """
    One purchased line on an invoice.

    ON_USE lines follow attendance: PENDING -> IN_PROGRESS -> COMPLETED and
    back. ON_SALE lines are written off when the invoice is created.
    """
    __tablename__ = "invoice_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)

    service_type = db.Column(db.String(32), nullable=False, default="SUBSCRIPTION")
    service_name = db.Column(db.String(255), nullable=False)
    service_description = db.Column(db.Text, nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    base_price = db.Column(db.Numeric(12, 2), nullable=False)
    vat_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    vat_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_price = db.Column(db.Numeric(12, 2), nullable=False)

    write_off_timing = db.Column(db.String(16), nullable=False, default=WRITE_OFF_ON_SALE)
    write_off_status = db.Column(db.String(16), nullable=False, default=WRITE_OFF_PENDING, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    invoice = db.relationship(
        "Invoice",
        backref=db.backref("items", lazy=True, order_by="InvoiceItem.id", cascade="all, delete-orphan"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "service_type": self.service_type,
            "service_name": self.service_name,
            "service_description": self.service_description,
            "quantity": self.quantity,
            "unit_price": money(self.unit_price),
            "base_price": money(self.base_price),
            "vat_rate": money(self.vat_rate),
            "vat_amount": money(self.vat_amount),
            "discount_percent": money(self.discount_percent),
            "discount_amount": money(self.discount_amount),
            "total_price": money(self.total_price),
            "write_off_timing": self.write_off_timing,
            "write_off_status": self.write_off_status,
        }


class Payment(db.Model):
    """
    One payment attempt by a client.

    Cash payments are COMPLETED on creation; every other method waits in
    PENDING for external confirmation. Only COMPLETED payments count toward
    an invoice.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_invoice_status", "invoice_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True, index=True)
    rental_id = db.Column(db.Integer, nullable=True, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    payment_method = db.Column(db.String(32), nullable=False, index=True)
    payment_type = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)

    notes = db.Column(db.Text, nullable=True)
    transaction_id = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    client = db.relationship("Client", backref=db.backref("payments", lazy=True))
    invoice = db.relationship("Invoice", backref=db.backref("payments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "invoice_id": self.invoice_id,
            "subscription_id": self.subscription_id,
            "rental_id": self.rental_id,
            "amount": money(self.amount),
            "payment_method": self.payment_method,
            "payment_type": self.payment_type,
            "status": self.status,
            "notes": self.notes,
            "transaction_id": self.transaction_id,
            "created_at": to_utc_z(self.created_at),
        }
