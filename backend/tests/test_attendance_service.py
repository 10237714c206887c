"""
Attendance reconciliation tests.

Verifies:
- PRESENT marks consume a visit and advance the invoice write-off
- Status changes and deletions give the visit back and revert write-off
- Rejected marks leave no trace
- Client activity is tracked after a successful mark
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from culture_crm.extensions import db
from culture_crm.models import Attendance, Client, InvoiceItem, Schedule, Subscription
from culture_crm.models.billing import (
    WRITE_OFF_COMPLETED,
    WRITE_OFF_IN_PROGRESS,
    WRITE_OFF_PENDING,
)
from culture_crm.models.people import CLIENT_STATUS_ACTIVE, CLIENT_STATUS_INACTIVE
from culture_crm.services import attendance_service, client_activity_service
from culture_crm.validation import ConflictError, NotFoundError, ValidationError

from conftest import CLASS_DATE


def _fresh(db_session, model, pk):
    db_session.expire_all()
    return db_session.get(model, pk)


def _item_status(db_session, invoice):
    return _fresh(db_session, InvoiceItem, invoice.items[0].id).write_off_status


class TestMarkAttendance:

    def test_round_trip_single_visit(
        self, db_session, staff_user, client_record, schedule, make_subscription, make_invoice
    ):
        sub = make_subscription(remaining=1)
        invoice = make_invoice(subscription=sub)

        attendance = attendance_service.mark_attendance(
            schedule.id, client_record.id, "PRESENT", staff_user.id
        )

        assert attendance.subscription_id == sub.id
        assert attendance.subscription_deducted is True
        assert attendance.marked_by == staff_user.id
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 0
        assert _item_status(db_session, invoice) == WRITE_OFF_COMPLETED

        attendance_service.update_status(attendance.id, staff_user.id, status="ABSENT")

        updated = _fresh(db_session, Attendance, attendance.id)
        assert updated.status == "ABSENT"
        assert updated.subscription_deducted is False
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 1
        assert _item_status(db_session, invoice) == WRITE_OFF_PENDING

    def test_scenario_unlimited_subscription(
        self, db_session, staff_user, client_record, schedule, make_subscription
    ):
        sub = make_subscription(kind="UNLIMITED")

        attendance = attendance_service.mark_attendance(
            schedule.id, client_record.id, "PRESENT", staff_user.id
        )

        assert attendance.subscription_deducted is True
        assert attendance.subscription_id == sub.id
        assert _fresh(db_session, Subscription, sub.id).remaining_visits is None

    def test_visit_pack_counts_down(self, db_session, staff_user, client_record, make_schedule, make_subscription, make_invoice):
        sub = make_subscription(kind="VISIT_PACK", remaining=2)
        invoice = make_invoice(subscription=sub)
        first = make_schedule(CLASS_DATE)
        second = make_schedule(CLASS_DATE + timedelta(days=7))

        attendance_service.mark_attendance(first.id, client_record.id, "PRESENT", staff_user.id)
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 1
        assert _item_status(db_session, invoice) == WRITE_OFF_IN_PROGRESS

        attendance_service.mark_attendance(second.id, client_record.id, "PRESENT", staff_user.id)
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 0
        assert _item_status(db_session, invoice) == WRITE_OFF_COMPLETED

    def test_boundary_no_visits_left_makes_no_mutation(
        self, db_session, staff_user, client_record, schedule, make_subscription
    ):
        sub = make_subscription(remaining=0)
        version = sub.version

        with pytest.raises(ValidationError) as excinfo:
            attendance_service.mark_attendance(
                schedule.id, client_record.id, "PRESENT", staff_user.id, subscription_id=sub.id
            )

        assert excinfo.value.code == "NO_VISITS_LEFT"
        fresh = _fresh(db_session, Subscription, sub.id)
        assert fresh.remaining_visits == 0
        assert fresh.version == version
        assert db_session.query(Attendance).count() == 0

    def test_without_basis_is_unbilled(self, db_session, staff_user, client_record, schedule):
        attendance = attendance_service.mark_attendance(
            schedule.id, client_record.id, "PRESENT", staff_user.id
        )

        assert attendance.subscription_id is None
        assert attendance.subscription_deducted is False

    def test_exhausted_subscription_not_picked_automatically(
        self, db_session, staff_user, client_record, schedule, make_subscription
    ):
        sub = make_subscription(remaining=0)

        attendance = attendance_service.mark_attendance(
            schedule.id, client_record.id, "PRESENT", staff_user.id
        )

        assert attendance.subscription_id is None
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 0

    def test_absent_mark_consumes_nothing(self, db_session, staff_user, client_record, schedule, make_subscription):
        sub = make_subscription(remaining=1)

        attendance = attendance_service.mark_attendance(
            schedule.id, client_record.id, "ABSENT", staff_user.id, notes="sick"
        )

        assert attendance.subscription_id is None
        assert attendance.notes == "sick"
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 1

    def test_duplicate_mark_conflicts(self, db_session, staff_user, client_record, schedule, make_subscription):
        sub = make_subscription(kind="VISIT_PACK", remaining=5)
        attendance_service.mark_attendance(schedule.id, client_record.id, "PRESENT", staff_user.id)

        with pytest.raises(ConflictError):
            attendance_service.mark_attendance(schedule.id, client_record.id, "PRESENT", staff_user.id)

        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 4

    def test_missing_schedule(self, db_session, staff_user, client_record):
        with pytest.raises(NotFoundError):
            attendance_service.mark_attendance(9999, client_record.id, "PRESENT", staff_user.id)

    def test_schedule_without_group(self, db_session, staff_user, client_record):
        event = Schedule(group_id=None, date=CLASS_DATE)
        db_session.add(event)
        db_session.commit()

        with pytest.raises(NotFoundError):
            attendance_service.mark_attendance(event.id, client_record.id, "PRESENT", staff_user.id)

    def test_missing_client(self, db_session, staff_user, schedule):
        with pytest.raises(NotFoundError):
            attendance_service.mark_attendance(schedule.id, 9999, "PRESENT", staff_user.id)

    def test_invalid_status(self, db_session, staff_user, client_record, schedule):
        with pytest.raises(ValidationError):
            attendance_service.mark_attendance(schedule.id, client_record.id, "LATE", staff_user.id)

    def test_reactivates_inactive_client(self, db_session, staff_user, client_record, schedule):
        client_record.status = CLIENT_STATUS_INACTIVE
        db_session.commit()

        attendance_service.mark_attendance(schedule.id, client_record.id, "PRESENT", staff_user.id)

        fresh = _fresh(db_session, Client, client_record.id)
        assert fresh.status == CLIENT_STATUS_ACTIVE
        assert fresh.last_activity_at is not None

    def test_activity_failure_does_not_fail_mark(
        self, db_session, staff_user, client_record, schedule, make_subscription, monkeypatch
    ):
        sub = make_subscription(remaining=1)

        def _broken_clock():
            raise OperationalError("UPDATE clients", {}, Exception("database is locked"))

        monkeypatch.setattr(client_activity_service, "utcnow", _broken_clock)

        attendance = attendance_service.mark_attendance(
            schedule.id, client_record.id, "PRESENT", staff_user.id
        )

        assert _fresh(db_session, Attendance, attendance.id).subscription_deducted is True
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 0

    def test_unexpected_activity_error_does_not_fail_mark(
        self, db_session, staff_user, client_record, schedule, monkeypatch
    ):
        def _broken_clock():
            raise RuntimeError("clock unavailable")

        monkeypatch.setattr(client_activity_service, "utcnow", _broken_clock)

        attendance = attendance_service.mark_attendance(
            schedule.id, client_record.id, "PRESENT", staff_user.id
        )

        assert _fresh(db_session, Attendance, attendance.id).status == "PRESENT"
        assert db_session.query(Attendance).count() == 1


class TestUpdateStatus:

    def test_absent_to_present_deducts(self, db_session, staff_user, client_record, schedule, make_subscription, make_invoice):
        sub = make_subscription(kind="VISIT_PACK", remaining=3)
        invoice = make_invoice(subscription=sub)
        attendance = attendance_service.mark_attendance(schedule.id, client_record.id, "ABSENT", staff_user.id)

        attendance_service.update_status(attendance.id, staff_user.id, status="PRESENT")

        updated = _fresh(db_session, Attendance, attendance.id)
        assert updated.status == "PRESENT"
        assert updated.subscription_id == sub.id
        assert updated.subscription_deducted is True
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 2
        assert _item_status(db_session, invoice) == WRITE_OFF_IN_PROGRESS

    def test_excused_to_present_with_exhausted_choice_fails_cleanly(
        self, db_session, staff_user, client_record, schedule, make_subscription
    ):
        sub = make_subscription(remaining=0)
        attendance = attendance_service.mark_attendance(schedule.id, client_record.id, "EXCUSED", staff_user.id)

        with pytest.raises(ValidationError):
            attendance_service.update_status(
                attendance.id, staff_user.id, status="PRESENT", subscription_id=sub.id
            )

        assert _fresh(db_session, Attendance, attendance.id).status == "EXCUSED"
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 0

    def test_present_to_present_keeps_basis(self, db_session, staff_user, client_record, schedule, make_subscription):
        sub = make_subscription(kind="VISIT_PACK", remaining=3)
        other = make_subscription(kind="VISIT_PACK", remaining=3)
        attendance = attendance_service.mark_attendance(
            schedule.id, client_record.id, "PRESENT", staff_user.id, subscription_id=sub.id
        )

        attendance_service.update_status(attendance.id, staff_user.id, status="PRESENT", subscription_id=other.id)

        updated = _fresh(db_session, Attendance, attendance.id)
        assert updated.subscription_id == sub.id
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 2
        assert _fresh(db_session, Subscription, other.id).remaining_visits == 3

    def test_absent_to_excused_is_plain_update(self, db_session, staff_user, client_record, schedule):
        attendance = attendance_service.mark_attendance(
            schedule.id, client_record.id, "ABSENT", staff_user.id, notes="first note"
        )

        attendance_service.update_status(attendance.id, staff_user.id, status="EXCUSED")

        updated = _fresh(db_session, Attendance, attendance.id)
        assert updated.status == "EXCUSED"
        assert updated.notes == "first note"

    def test_notes_only(self, db_session, staff_user, client_record, schedule):
        attendance = attendance_service.mark_attendance(schedule.id, client_record.id, "ABSENT", staff_user.id)

        attendance_service.update_status(attendance.id, staff_user.id, notes="called back")

        updated = _fresh(db_session, Attendance, attendance.id)
        assert updated.status == "ABSENT"
        assert updated.notes == "called back"
        assert updated.marked_at is not None

    def test_unbilled_present_to_absent_restores_nothing(self, db_session, staff_user, client_record, schedule):
        attendance = attendance_service.mark_attendance(schedule.id, client_record.id, "PRESENT", staff_user.id)

        attendance_service.update_status(attendance.id, staff_user.id, status="ABSENT")

        updated = _fresh(db_session, Attendance, attendance.id)
        assert updated.status == "ABSENT"
        assert updated.subscription_id is None

    def test_missing_attendance(self, db_session, staff_user):
        with pytest.raises(NotFoundError):
            attendance_service.update_status(9999, staff_user.id, status="ABSENT")


class TestRemove:

    def test_scenario_delete_with_other_deductions_remaining(
        self, db_session, staff_user, client_record, make_schedule, make_subscription, make_invoice
    ):
        sub = make_subscription(remaining=2)
        invoice = make_invoice(subscription=sub)
        first = make_schedule(CLASS_DATE)
        second = make_schedule(CLASS_DATE + timedelta(days=7))
        kept = attendance_service.mark_attendance(first.id, client_record.id, "PRESENT", staff_user.id)
        removed = attendance_service.mark_attendance(second.id, client_record.id, "PRESENT", staff_user.id)
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 0
        assert _item_status(db_session, invoice) == WRITE_OFF_COMPLETED

        result = attendance_service.remove(removed.id)

        assert result["schedule_id"] == second.id
        assert _fresh(db_session, Attendance, removed.id) is None
        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 1
        assert _item_status(db_session, invoice) == WRITE_OFF_IN_PROGRESS

        attendance_service.remove(kept.id)

        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 2
        assert _item_status(db_session, invoice) == WRITE_OFF_PENDING

    def test_delete_last_deduction_back_to_pending(
        self, db_session, staff_user, client_record, schedule, make_subscription, make_invoice
    ):
        sub = make_subscription(remaining=1)
        invoice = make_invoice(subscription=sub)
        attendance = attendance_service.mark_attendance(schedule.id, client_record.id, "PRESENT", staff_user.id)

        attendance_service.remove(attendance.id)

        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 1
        assert _item_status(db_session, invoice) == WRITE_OFF_PENDING

    def test_delete_absent_mark(self, db_session, staff_user, client_record, schedule, make_subscription):
        sub = make_subscription(remaining=1)
        attendance = attendance_service.mark_attendance(schedule.id, client_record.id, "ABSENT", staff_user.id)

        attendance_service.remove(attendance.id)

        assert _fresh(db_session, Subscription, sub.id).remaining_visits == 1
        assert db_session.query(Attendance).count() == 0

    def test_missing_attendance(self, db_session):
        with pytest.raises(NotFoundError):
            attendance_service.remove(9999)


class TestAvailableBases:

    def test_lists_eligible_newest_first(self, db_session, client_record, other_client, schedule, make_subscription):
        first = make_subscription(kind="VISIT_PACK", remaining=2)
        second = make_subscription(kind="UNLIMITED", client=other_client)
        make_subscription(remaining=0)

        result = attendance_service.get_available_bases(schedule.id)

        assert result["schedule_id"] == schedule.id
        assert [b["id"] for b in result["bases"]] == [second.id, first.id]
        assert result["bases"][0]["client"]["id"] == other_client.id

    def test_schedule_without_group_has_no_bases(self, db_session, make_subscription):
        make_subscription()
        event = Schedule(group_id=None, date=CLASS_DATE)
        db_session.add(event)
        db_session.commit()

        assert attendance_service.get_available_bases(event.id)["bases"] == []

    def test_missing_schedule(self, db_session):
        with pytest.raises(NotFoundError):
            attendance_service.get_available_bases(9999)


class TestClientStats:

    def _mark(self, schedule, client, status, user):
        attendance_service.mark_attendance(schedule.id, client.id, status, user.id)

    def test_counts_and_rate(self, db_session, staff_user, client_record, make_schedule):
        days = [make_schedule(CLASS_DATE + timedelta(days=i)) for i in range(3)]
        self._mark(days[0], client_record, "PRESENT", staff_user)
        self._mark(days[1], client_record, "PRESENT", staff_user)
        self._mark(days[2], client_record, "EXCUSED", staff_user)

        stats = attendance_service.get_client_stats(client_record.id)

        assert stats["total"] == 3
        assert stats["present"] == 2
        assert stats["absent"] == 0
        assert stats["excused"] == 1
        assert stats["attendance_rate"] == 66.67

    def test_bounds_are_inclusive(self, db_session, staff_user, client_record, make_schedule):
        days = [make_schedule(CLASS_DATE + timedelta(days=i)) for i in range(3)]
        for day in days:
            self._mark(day, client_record, "ABSENT", staff_user)

        stats = attendance_service.get_client_stats(
            client_record.id, date_from=days[1].date, date_to=days[2].date
        )

        assert stats["total"] == 2
        assert stats["attendance_rate"] == 0

    def test_no_marks_gives_zero_rate(self, db_session, client_record):
        stats = attendance_service.get_client_stats(client_record.id)

        assert stats["total"] == 0
        assert stats["attendance_rate"] == 0

    def test_inverted_range_rejected(self, db_session, client_record):
        with pytest.raises(ValidationError) as excinfo:
            attendance_service.get_client_stats(
                client_record.id, date_from=CLASS_DATE, date_to=CLASS_DATE - timedelta(days=1)
            )

        assert excinfo.value.code == "INVALID_DATE_RANGE"


class TestQueries:

    def test_find_all_paginates_and_filters(self, db_session, staff_user, client_record, other_client, make_schedule):
        days = [make_schedule(CLASS_DATE + timedelta(days=i)) for i in range(3)]
        for day in days:
            attendance_service.mark_attendance(day.id, client_record.id, "ABSENT", staff_user.id)
        attendance_service.mark_attendance(days[0].id, other_client.id, "PRESENT", staff_user.id)

        page = attendance_service.find_all(client_id=client_record.id, page=1, limit=2)

        assert page["meta"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}
        assert [a["schedule_id"] for a in page["data"]] == [days[2].id, days[1].id]

        present = attendance_service.find_all(status="PRESENT")
        assert present["meta"]["total"] == 1
        assert present["data"][0]["client_id"] == other_client.id

    def test_get_by_schedule(self, db_session, staff_user, client_record, other_client, schedule):
        attendance_service.mark_attendance(schedule.id, client_record.id, "ABSENT", staff_user.id)
        attendance_service.mark_attendance(schedule.id, other_client.id, "EXCUSED", staff_user.id)

        records = attendance_service.get_by_schedule(schedule.id)

        assert [r.client_id for r in records] == [client_record.id, other_client.id]

    def test_find_one_missing(self, db_session):
        with pytest.raises(NotFoundError):
            attendance_service.find_one(9999)

    def test_to_dict_nests_related_records(self, db_session, staff_user, client_record, schedule, make_subscription):
        make_subscription(remaining=1)
        attendance = attendance_service.mark_attendance(schedule.id, client_record.id, "PRESENT", staff_user.id)

        data = db.session.get(Attendance, attendance.id).to_dict()

        assert data["client"]["last_name"] == "Petrov"
        assert data["schedule"]["date"] == CLASS_DATE.isoformat()
        assert data["subscription"]["remaining_visits"] == 0
        assert data["marked_by_user"]["first_name"] == "Olga"
