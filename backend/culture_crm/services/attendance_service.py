# Overview: Service-layer operations for attendance; encapsulates business logic and database work.

"""
Attendance Reconciliation Service

WHY: An attendance mark is where a class visit, the client's subscription
and the invoice that paid for it meet. Marking PRESENT consumes a visit and
moves ON_USE invoice lines forward; undoing the mark gives the visit back
and steps the lines back.

DESIGN PRINCIPLES:
- One transaction per operation: Attendance, Subscription and InvoiceItem
  changes commit together or not at all
- Validation happens before any write, so a rejected call leaves no trace
- Status changes go through an explicit (old, new) transition table
- Client activity tracking runs after commit and can never fail the mark
"""

from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Attendance, Client, Schedule, Subscription
from ..models.classes import (
    ATTENDANCE_ABSENT,
    ATTENDANCE_EXCUSED,
    ATTENDANCE_PRESENT,
    VALID_ATTENDANCE_STATUSES,
)
from ..validation import (
    UNSET,
    ConflictError,
    NotFoundError,
    ValidationError,
    validate_date_range,
)
from culture_crm.time_utils import to_iso_date, utcnow
from . import client_activity_service, subscription_ledger, write_off_service
from .concurrency import lock_for_update, run_with_retry
from .pagination import paginate


def _require_status(status: str) -> None:
    if status not in VALID_ATTENDANCE_STATUSES:
        raise ValidationError(
            f"Invalid status: {status}. Must be one of {list(VALID_ATTENDANCE_STATUSES)}"
        )


def _load_schedule_with_group(schedule_id: int) -> Schedule:
    schedule = db.session.get(Schedule, schedule_id)
    if schedule is None or schedule.group is None:
        raise NotFoundError("Schedule or group not found")
    return schedule


def _locked_attendance(attendance_id: int) -> Attendance:
    attendance = lock_for_update(
        db.session.query(Attendance).filter(Attendance.id == attendance_id)
    ).first()
    if attendance is None:
        raise NotFoundError(f"Attendance {attendance_id} not found")
    return attendance


def _locked_subscription(subscription_id: int) -> Subscription | None:
    return lock_for_update(
        db.session.query(Subscription).filter(Subscription.id == subscription_id)
    ).first()


def _consume_basis(client_id: int, schedule: Schedule, preferred_subscription_id: int | None) -> Subscription | None:
    """Resolve a basis for a PRESENT mark, deduct one visit and advance write-off."""
    subscription = subscription_ledger.find_valid_subscription(
        client_id,
        schedule.group_id,
        schedule.date,
        preferred_subscription_id,
    )
    if subscription is None:
        return None

    subscription_ledger.deduct(subscription)
    write_off_service.advance(subscription.id, schedule.date)
    return subscription


# =============================================================================
# MARKING
# =============================================================================

def mark_attendance(
    schedule_id: int,
    client_id: int,
    status: str,
    acting_user_id: int,
    *,
    notes: str | None = None,
    subscription_id: int | None = None,
) -> Attendance:
    """
    Record a client's attendance for one class occurrence.

    Args:
        schedule_id: Class occurrence
        client_id: Client being marked
        status: PRESENT, ABSENT or EXCUSED
        acting_user_id: Staff member making the mark
        notes: Free text (optional)
        subscription_id: Basis chosen by staff (optional, PRESENT only).
            Without it the newest eligible subscription is used; if none
            exists the mark is stored without a basis.

    Returns:
        Attendance record

    Raises:
        NotFoundError: Schedule, group, client or chosen subscription missing
        ConflictError: Client already marked for this schedule
        ValidationError: Chosen subscription unusable or out of visits
    """
    _require_status(status)

    def _op():
        schedule = _load_schedule_with_group(schedule_id)

        if db.session.get(Client, client_id) is None:
            raise NotFoundError(f"Client {client_id} not found")

        existing = db.session.query(Attendance.id).filter(
            Attendance.schedule_id == schedule_id,
            Attendance.client_id == client_id,
        ).first()
        if existing:
            raise ConflictError("Attendance already marked for this client and schedule")

        attendance = Attendance(
            schedule_id=schedule_id,
            client_id=client_id,
            status=status,
            notes=notes,
            subscription_id=None,
            subscription_deducted=False,
            marked_by=acting_user_id,
            marked_at=utcnow(),
        )

        if status == ATTENDANCE_PRESENT:
            subscription = _consume_basis(client_id, schedule, subscription_id)
            if subscription is not None:
                attendance.subscription_id = subscription.id
                attendance.subscription_deducted = True

        db.session.add(attendance)
        try:
            db.session.flush()
        except IntegrityError:
            raise ConflictError("Attendance already marked for this client and schedule")

        db.session.commit()
        return attendance

    attendance = run_with_retry(_op)
    client_activity_service.reactivate_client_if_needed(client_id)
    return attendance


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

def _release_basis(attendance: Attendance, new_status: str, subscription_id: int | None) -> None:
    """PRESENT -> not PRESENT: give the visit back if this mark took one."""
    attendance.status = new_status
    if not (attendance.subscription_deducted and attendance.subscription_id):
        return

    subscription = _locked_subscription(attendance.subscription_id)
    attendance.subscription_deducted = False
    db.session.flush()

    if subscription is not None:
        subscription_ledger.restore(subscription)
        write_off_service.revert(subscription.id)


def _consume_basis_on_update(attendance: Attendance, new_status: str, subscription_id: int | None) -> None:
    """not PRESENT -> PRESENT: same basis rules as a fresh PRESENT mark."""
    schedule = attendance.schedule
    if schedule is None or schedule.group is None:
        raise NotFoundError("Schedule or group not found")

    subscription = _consume_basis(attendance.client_id, schedule, subscription_id)
    attendance.status = new_status
    attendance.subscription_id = subscription.id if subscription is not None else None
    attendance.subscription_deducted = subscription is not None


def _keep_basis(attendance: Attendance, new_status: str, subscription_id: int | None) -> None:
    attendance.status = new_status


_TRANSITIONS = {
    (ATTENDANCE_PRESENT, ATTENDANCE_PRESENT): _keep_basis,
    (ATTENDANCE_PRESENT, ATTENDANCE_ABSENT): _release_basis,
    (ATTENDANCE_PRESENT, ATTENDANCE_EXCUSED): _release_basis,
    (ATTENDANCE_ABSENT, ATTENDANCE_PRESENT): _consume_basis_on_update,
    (ATTENDANCE_ABSENT, ATTENDANCE_ABSENT): _keep_basis,
    (ATTENDANCE_ABSENT, ATTENDANCE_EXCUSED): _keep_basis,
    (ATTENDANCE_EXCUSED, ATTENDANCE_PRESENT): _consume_basis_on_update,
    (ATTENDANCE_EXCUSED, ATTENDANCE_ABSENT): _keep_basis,
    (ATTENDANCE_EXCUSED, ATTENDANCE_EXCUSED): _keep_basis,
}


def update_status(
    attendance_id: int,
    acting_user_id: int,
    *,
    status: str | None = None,
    subscription_id: int | None = None,
    notes=UNSET,
) -> Attendance:
    """
    Change an attendance mark and reconcile the subscription behind it.

    subscription_id is only consulted when the mark becomes PRESENT. notes
    are replaced only when passed (None clears them). marked_by / marked_at
    are always refreshed.

    Raises:
        NotFoundError: Attendance (or, when becoming PRESENT, its schedule or group) missing
        ValidationError: Invalid status or unusable basis
    """
    if status is not None:
        _require_status(status)

    def _op():
        attendance = _locked_attendance(attendance_id)
        old_status = attendance.status
        new_status = status or old_status

        handler = _TRANSITIONS[(old_status, new_status)]
        handler(attendance, new_status, subscription_id)

        if notes is not UNSET:
            attendance.notes = notes
        attendance.marked_by = acting_user_id
        attendance.marked_at = utcnow()

        db.session.commit()
        return attendance

    return run_with_retry(_op)


def remove(attendance_id: int) -> dict:
    """
    Delete an attendance mark, giving back the visit it consumed.

    Raises:
        NotFoundError: Attendance missing
    """
    def _op():
        attendance = _locked_attendance(attendance_id)
        schedule_id = attendance.schedule_id

        subscription = None
        if (
            attendance.status == ATTENDANCE_PRESENT
            and attendance.subscription_deducted
            and attendance.subscription_id
        ):
            subscription = _locked_subscription(attendance.subscription_id)

        if subscription is not None:
            subscription_ledger.restore(subscription)

        db.session.delete(attendance)
        db.session.flush()

        if subscription is not None:
            write_off_service.revert(subscription.id)

        db.session.commit()
        return {"message": "Attendance record deleted", "schedule_id": schedule_id}

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_available_bases(schedule_id: int) -> dict:
    """Subscriptions staff may pick as basis for this class occurrence, newest first."""
    schedule = db.session.get(Schedule, schedule_id)
    if schedule is None:
        raise NotFoundError(f"Schedule {schedule_id} not found")

    bases = []
    if schedule.group_id:
        for subscription in subscription_ledger.eligible_subscriptions_query(schedule.group_id, schedule.date).all():
            data = subscription.to_dict()
            data["client"] = subscription.client.to_summary()
            bases.append(data)

    return {
        "schedule_id": schedule.id,
        "group_id": schedule.group_id,
        "date": to_iso_date(schedule.date),
        "bases": bases,
    }


def get_client_stats(client_id: int, date_from: date | None = None, date_to: date | None = None) -> dict:
    """
    Attendance counts for a client, bounded inclusively on the class date.

    attendance_rate is present / total * 100 rounded to 2 decimals, 0 when
    there are no marks.
    """
    validate_date_range(date_from, date_to)

    query = (
        db.session.query(Attendance.status, func.count(Attendance.id))
        .join(Schedule, Attendance.schedule_id == Schedule.id)
        .filter(Attendance.client_id == client_id)
    )
    if date_from:
        query = query.filter(Schedule.date >= date_from)
    if date_to:
        query = query.filter(Schedule.date <= date_to)

    counts = dict(query.group_by(Attendance.status).all())
    present = counts.get(ATTENDANCE_PRESENT, 0)
    absent = counts.get(ATTENDANCE_ABSENT, 0)
    excused = counts.get(ATTENDANCE_EXCUSED, 0)
    total = present + absent + excused

    rate = 0.0
    if total:
        rate = float(
            (Decimal(present) * 100 / Decimal(total)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        )

    return {
        "client_id": client_id,
        "total": total,
        "present": present,
        "absent": absent,
        "excused": excused,
        "attendance_rate": rate,
        "date_from": to_iso_date(date_from),
        "date_to": to_iso_date(date_to),
    }


def find_all(
    *,
    schedule_id: int | None = None,
    group_id: int | None = None,
    client_id: int | None = None,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int | None = None,
    limit: int | None = None,
) -> dict:
    validate_date_range(date_from, date_to)
    if status is not None:
        _require_status(status)

    query = db.session.query(Attendance).join(Schedule, Attendance.schedule_id == Schedule.id)
    if schedule_id:
        query = query.filter(Attendance.schedule_id == schedule_id)
    if group_id:
        query = query.filter(Schedule.group_id == group_id)
    if client_id:
        query = query.filter(Attendance.client_id == client_id)
    if status:
        query = query.filter(Attendance.status == status)
    if date_from:
        query = query.filter(Schedule.date >= date_from)
    if date_to:
        query = query.filter(Schedule.date <= date_to)

    query = query.order_by(Schedule.date.desc(), Attendance.created_at.desc(), Attendance.id.desc())
    return paginate(query, page, limit)


def find_one(attendance_id: int) -> Attendance:
    attendance = db.session.get(Attendance, attendance_id)
    if attendance is None:
        raise NotFoundError(f"Attendance {attendance_id} not found")
    return attendance


def get_by_schedule(schedule_id: int) -> list[Attendance]:
    return (
        db.session.query(Attendance)
        .filter(Attendance.schedule_id == schedule_id)
        .order_by(Attendance.created_at.asc(), Attendance.id.asc())
        .all()
    )
