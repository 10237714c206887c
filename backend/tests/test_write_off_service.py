"""
Invoice write-off state machine tests.

ON_USE lines move PENDING -> IN_PROGRESS -> COMPLETED with consumption and
step back when visits are returned; revert recomputes from current state.
"""

from culture_crm.models import Attendance, InvoiceItem
from culture_crm.models.billing import (
    WRITE_OFF_CANCELLED,
    WRITE_OFF_COMPLETED,
    WRITE_OFF_IN_PROGRESS,
    WRITE_OFF_ON_SALE,
    WRITE_OFF_PENDING,
)
from culture_crm.models.classes import ATTENDANCE_PRESENT
from culture_crm.services import subscription_ledger, write_off_service

from conftest import CLASS_DATE


def _item_status(db_session, invoice):
    db_session.expire_all()
    return db_session.get(InvoiceItem, invoice.items[0].id).write_off_status


def _deducted_attendance(db_session, schedule, client, subscription):
    attendance = Attendance(
        schedule_id=schedule.id,
        client_id=client.id,
        subscription_id=subscription.id,
        status=ATTENDANCE_PRESENT,
        subscription_deducted=True,
    )
    db_session.add(attendance)
    db_session.commit()
    return attendance


class TestAdvance:

    def test_first_consumption_moves_to_in_progress(self, db_session, make_subscription, make_invoice):
        sub = make_subscription(kind="VISIT_PACK", remaining=4)
        invoice = make_invoice(subscription=sub)

        subscription_ledger.deduct(sub)
        write_off_service.advance(sub.id, CLASS_DATE)
        db_session.commit()

        assert _item_status(db_session, invoice) == WRITE_OFF_IN_PROGRESS

    def test_last_visit_completes(self, db_session, make_subscription, make_invoice):
        sub = make_subscription(remaining=1)
        invoice = make_invoice(subscription=sub)

        subscription_ledger.deduct(sub)
        write_off_service.advance(sub.id, CLASS_DATE)
        db_session.commit()

        assert _item_status(db_session, invoice) == WRITE_OFF_COMPLETED

    def test_unlimited_never_completes(self, db_session, make_subscription, make_invoice):
        sub = make_subscription(kind="UNLIMITED")
        invoice = make_invoice(subscription=sub)

        write_off_service.advance(sub.id, CLASS_DATE)
        write_off_service.advance(sub.id, CLASS_DATE)
        db_session.commit()

        assert _item_status(db_session, invoice) == WRITE_OFF_IN_PROGRESS

    def test_on_sale_lines_untouched(self, db_session, make_subscription, make_invoice):
        sub = make_subscription(remaining=1)
        invoice = make_invoice(subscription=sub, timing=WRITE_OFF_ON_SALE)

        subscription_ledger.deduct(sub)
        write_off_service.advance(sub.id, CLASS_DATE)
        db_session.commit()

        assert _item_status(db_session, invoice) == WRITE_OFF_PENDING

    def test_cancelled_lines_untouched(self, db_session, make_subscription, make_invoice):
        sub = make_subscription(remaining=1)
        invoice = make_invoice(subscription=sub)
        invoice.items[0].write_off_status = WRITE_OFF_CANCELLED
        db_session.commit()

        subscription_ledger.deduct(sub)
        write_off_service.advance(sub.id, CLASS_DATE)
        db_session.commit()

        assert _item_status(db_session, invoice) == WRITE_OFF_CANCELLED

    def test_invoice_of_other_subscription_untouched(self, db_session, make_subscription, make_invoice):
        sub = make_subscription(remaining=1)
        other = make_subscription(remaining=1)
        invoice = make_invoice(subscription=other)

        subscription_ledger.deduct(sub)
        write_off_service.advance(sub.id, CLASS_DATE)
        db_session.commit()

        assert _item_status(db_session, invoice) == WRITE_OFF_PENDING


class TestRevert:

    def test_back_to_pending_when_nothing_deducted(self, db_session, make_subscription, make_invoice):
        sub = make_subscription(remaining=1)
        invoice = make_invoice(subscription=sub)
        subscription_ledger.deduct(sub)
        write_off_service.advance(sub.id, CLASS_DATE)
        db_session.commit()

        subscription_ledger.restore(sub)
        write_off_service.revert(sub.id)
        db_session.commit()

        assert _item_status(db_session, invoice) == WRITE_OFF_PENDING

    def test_stays_in_progress_while_deductions_remain(
        self, db_session, schedule, client_record, make_subscription, make_invoice
    ):
        sub = make_subscription(remaining=1)
        invoice = make_invoice(subscription=sub)
        subscription_ledger.deduct(sub)
        write_off_service.advance(sub.id, CLASS_DATE)
        _deducted_attendance(db_session, schedule, client_record, sub)

        subscription_ledger.restore(sub)
        write_off_service.revert(sub.id)
        db_session.commit()

        assert _item_status(db_session, invoice) == WRITE_OFF_IN_PROGRESS

    def test_revert_is_idempotent(self, db_session, schedule, client_record, make_subscription, make_invoice):
        sub = make_subscription(remaining=1)
        invoice = make_invoice(subscription=sub)
        subscription_ledger.deduct(sub)
        write_off_service.advance(sub.id, CLASS_DATE)
        _deducted_attendance(db_session, schedule, client_record, sub)
        subscription_ledger.restore(sub)

        write_off_service.revert(sub.id)
        db_session.commit()
        once = _item_status(db_session, invoice)

        write_off_service.revert(sub.id)
        db_session.commit()
        twice = _item_status(db_session, invoice)

        assert once == twice == WRITE_OFF_IN_PROGRESS

    def test_completed_kept_while_counter_at_zero(self, db_session, make_subscription, make_invoice):
        sub = make_subscription(remaining=1)
        invoice = make_invoice(subscription=sub)
        subscription_ledger.deduct(sub)
        write_off_service.advance(sub.id, CLASS_DATE)
        db_session.commit()

        # No visit returned: counter still zero
        write_off_service.revert(sub.id)
        db_session.commit()

        assert _item_status(db_session, invoice) == WRITE_OFF_COMPLETED

    def test_count_of_deducted_attendances(self, db_session, schedule, client_record, make_subscription):
        sub = make_subscription(remaining=1)
        assert write_off_service.count_deducted_attendances(sub.id) == 0

        _deducted_attendance(db_session, schedule, client_record, sub)

        assert write_off_service.count_deducted_attendances(sub.id) == 1
