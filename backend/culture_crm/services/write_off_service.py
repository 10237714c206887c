# Overview: Service-layer operations for invoice item write-off; encapsulates business logic and database work.

"""
Invoice Write-off State Machine

ON_USE invoice lines are recognized progressively as the subscription they
pay for is consumed:

    PENDING -> IN_PROGRESS -> COMPLETED
    COMPLETED -> IN_PROGRESS -> PENDING

ON_SALE lines and CANCELLED lines are never touched here.

advance() and revert() are not inverses of each other. revert() recomputes
the state from the current subscription counter and the attendances still
holding a deduction, so calling it repeatedly is harmless.
"""

from __future__ import annotations

from datetime import date

from ..extensions import db
from ..models import Attendance, Invoice, InvoiceItem, Subscription
from ..models.billing import (
    WRITE_OFF_COMPLETED,
    WRITE_OFF_IN_PROGRESS,
    WRITE_OFF_ON_USE,
    WRITE_OFF_PENDING,
)
from ..models.classes import ATTENDANCE_PRESENT


def _on_use_items(subscription_id: int) -> list[InvoiceItem]:
    return (
        db.session.query(InvoiceItem)
        .join(Invoice, InvoiceItem.invoice_id == Invoice.id)
        .filter(
            Invoice.subscription_id == subscription_id,
            InvoiceItem.write_off_timing == WRITE_OFF_ON_USE,
            InvoiceItem.write_off_status.in_(
                (WRITE_OFF_PENDING, WRITE_OFF_IN_PROGRESS, WRITE_OFF_COMPLETED)
            ),
        )
        .order_by(InvoiceItem.id.asc())
        .all()
    )


def _is_fully_consumed(subscription: Subscription | None) -> bool:
    # Exact equality: only the moment the counter hits zero completes a line
    return (
        subscription is not None
        and subscription.is_counted
        and subscription.remaining_visits == 0
    )


def count_deducted_attendances(subscription_id: int) -> int:
    return (
        db.session.query(Attendance)
        .filter(
            Attendance.subscription_id == subscription_id,
            Attendance.status == ATTENDANCE_PRESENT,
            Attendance.subscription_deducted.is_(True),
        )
        .count()
    )


def advance(subscription_id: int, usage_date: date | None = None) -> list[InvoiceItem]:
    """
    Record one consumption of the subscription on its ON_USE lines.

    Args:
        subscription_id: Subscription that was just deducted
        usage_date: Class date the visit was consumed on (informational)

    Returns:
        The ON_USE items that were examined
    """
    items = _on_use_items(subscription_id)
    if not items:
        return items

    subscription = db.session.get(Subscription, subscription_id)
    fully_consumed = _is_fully_consumed(subscription)

    for item in items:
        if item.write_off_status == WRITE_OFF_PENDING:
            item.write_off_status = WRITE_OFF_IN_PROGRESS
        if fully_consumed:
            item.write_off_status = WRITE_OFF_COMPLETED

    db.session.flush()
    return items


def revert(subscription_id: int) -> list[InvoiceItem]:
    """
    Step ON_USE lines back after a deduction was given back.

    COMPLETED goes back to IN_PROGRESS once the counter is above zero again.
    IN_PROGRESS goes back to PENDING once no PRESENT attendance holds a
    deduction on the subscription. Callers must apply the attendance change
    (status update or delete) before calling this so it is not counted.
    """
    items = _on_use_items(subscription_id)
    if not items:
        return items

    subscription = db.session.get(Subscription, subscription_id)
    has_visits_back = (
        subscription is not None
        and subscription.is_counted
        and (subscription.remaining_visits or 0) > 0
    )
    deducted_left = count_deducted_attendances(subscription_id)

    for item in items:
        if item.write_off_status == WRITE_OFF_COMPLETED and has_visits_back:
            item.write_off_status = WRITE_OFF_IN_PROGRESS
        if item.write_off_status == WRITE_OFF_IN_PROGRESS and deducted_left == 0:
            item.write_off_status = WRITE_OFF_PENDING

    db.session.flush()
    return items
