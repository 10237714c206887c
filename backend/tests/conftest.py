"""
Pytest fixtures for culture CRM backend tests.

Provides test database setup, record factories, and test client.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from culture_crm import create_app
from culture_crm.extensions import db
from culture_crm.models import (
    Client,
    Group,
    Invoice,
    InvoiceItem,
    Schedule,
    Subscription,
    SubscriptionType,
    User,
)
from culture_crm.models.billing import WRITE_OFF_ON_USE, WRITE_OFF_PENDING
from culture_crm.models.classes import SUBSCRIPTION_STATUS_ACTIVE


CLASS_DATE = date(2024, 3, 15)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DB_RETRY_ATTEMPTS': 1,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.expunge_all()


@pytest.fixture(scope='function')
def staff_user(db_session):
    """Staff member who marks attendance."""
    user = User(first_name="Olga", last_name="Admin", email="olga@studio.local")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def client_record(db_session):
    """An ACTIVE client."""
    record = Client(first_name="Ivan", last_name="Petrov", phone="+70000000001")
    db_session.add(record)
    db_session.commit()
    return record


@pytest.fixture(scope='function')
def other_client(db_session):
    record = Client(first_name="Maria", last_name="Sidorova", phone="+70000000002")
    db_session.add(record)
    db_session.commit()
    return record


@pytest.fixture(scope='function')
def group(db_session):
    record = Group(name="Ceramics for adults")
    db_session.add(record)
    db_session.commit()
    return record


@pytest.fixture(scope='function')
def schedule(db_session, group):
    """One class of the group on CLASS_DATE."""
    record = Schedule(group_id=group.id, date=CLASS_DATE)
    db_session.add(record)
    db_session.commit()
    return record


@pytest.fixture(scope='function')
def make_schedule(db_session, group):
    def _make(on_date=CLASS_DATE, group_id="default"):
        record = Schedule(group_id=group.id if group_id == "default" else group_id, date=on_date)
        db_session.add(record)
        db_session.commit()
        return record
    return _make


@pytest.fixture(scope='function')
def make_subscription(db_session, group, client_record):
    """
    Factory for subscriptions valid around CLASS_DATE.

    remaining_visits defaults to None for UNLIMITED and 1 otherwise.
    """
    def _make(kind="SINGLE_VISIT", remaining="default", client=None, group_id=None,
              status=SUBSCRIPTION_STATUS_ACTIVE, start_date=None, end_date=None):
        sub_type = SubscriptionType(name=f"{kind} pass", type=kind, price=Decimal("1000.00"))
        db_session.add(sub_type)
        db_session.flush()

        if remaining == "default":
            remaining = None if kind == "UNLIMITED" else 1

        subscription = Subscription(
            client_id=(client or client_record).id,
            group_id=group_id or group.id,
            subscription_type_id=sub_type.id,
            remaining_visits=remaining,
            start_date=start_date or CLASS_DATE - timedelta(days=30),
            end_date=end_date or CLASS_DATE + timedelta(days=30),
            status=status,
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription
    return _make


@pytest.fixture(scope='function')
def make_invoice(db_session, client_record):
    """Factory for a PENDING invoice with one line."""
    counter = {"n": 0}

    def _make(total="1000.00", subscription=None, timing=WRITE_OFF_ON_USE, client=None):
        counter["n"] += 1
        amount = Decimal(total)
        invoice = Invoice(
            invoice_number=f"INV-20240301-{counter['n']:04d}",
            client_id=(client or client_record).id,
            subscription_id=subscription.id if subscription else None,
            subtotal=amount,
            total_amount=amount,
        )
        invoice.items.append(InvoiceItem(
            service_name="Subscription",
            quantity=1,
            unit_price=amount,
            base_price=amount,
            total_price=amount,
            write_off_timing=timing,
            write_off_status=WRITE_OFF_PENDING,
        ))
        db_session.add(invoice)
        db_session.commit()
        return invoice
    return _make


@pytest.fixture(scope='function')
def user_headers(staff_user) -> dict:
    """X-User-Id header of the staff user."""
    return {'X-User-Id': str(staff_user.id)}
