# Overview: Service-layer operations for the subscription visit ledger; encapsulates business logic and database work.

"""
Subscription Ledger

Tracks how many visits a client has left on a subscription and which
subscription is a valid basis for a class occurrence.

RULES:
- Only counted kinds (SINGLE_VISIT, VISIT_PACK) have their remaining_visits
  touched. UNLIMITED subscriptions are never decremented or incremented.
- A deduction is always re-validated inside the caller's transaction: the
  row is locked and the decrement is a guarded atomic UPDATE, so two
  concurrent marks against the last visit cannot both succeed.
- remaining_visits never goes below zero; running out is an error, never a
  silent clamp.

All functions expect to run inside the caller's unit of work (see
concurrency.run_with_retry); none of them commits.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import or_

from ..extensions import db
from ..models import Subscription
from ..models.classes import SUBSCRIPTION_STATUS_ACTIVE
from ..validation import (
    CODE_BASIS_WITHOUT_GROUP,
    CODE_NO_VISITS_LEFT,
    CODE_SUBSCRIPTION_NOT_ACTIVE,
    CODE_SUBSCRIPTION_OUT_OF_RANGE,
    CODE_SUBSCRIPTION_WRONG_CLIENT,
    CODE_SUBSCRIPTION_WRONG_GROUP,
    NotFoundError,
    ValidationError,
)
from .concurrency import lock_for_update


NO_VISITS_LEFT_MESSAGE = "No visits left on the subscription"


def eligible_subscriptions_query(group_id: int, on_date: date, client_id: int | None = None):
    """
    ACTIVE subscriptions of a group usable on a date, newest first.

    Eligible means start_date <= on_date <= end_date and either unlimited
    (remaining_visits IS NULL) or with at least one visit left.
    """
    query = db.session.query(Subscription).filter(
        Subscription.group_id == group_id,
        Subscription.status == SUBSCRIPTION_STATUS_ACTIVE,
        Subscription.start_date <= on_date,
        Subscription.end_date >= on_date,
        or_(Subscription.remaining_visits.is_(None), Subscription.remaining_visits > 0),
    )
    if client_id is not None:
        query = query.filter(Subscription.client_id == client_id)
    return query.order_by(Subscription.created_at.desc(), Subscription.id.desc())


def find_valid_subscription(
    client_id: int,
    group_id: int | None,
    schedule_date: date,
    preferred_subscription_id: int | None = None,
) -> Subscription | None:
    """
    Resolve the subscription to use as basis for a PRESENT mark.

    With preferred_subscription_id the choice is validated and any problem
    raises. Without it the newest eligible subscription is picked; None
    means the client has no basis, which is not an error.
    """
    if preferred_subscription_id is not None:
        return validate_subscription_for_schedule(
            preferred_subscription_id,
            client_id,
            group_id,
            schedule_date,
        )

    if not group_id:
        return None

    return lock_for_update(
        eligible_subscriptions_query(group_id, schedule_date, client_id=client_id)
    ).first()


def validate_subscription_for_schedule(
    subscription_id: int,
    client_id: int,
    group_id: int | None,
    schedule_date: date,
) -> Subscription:
    if not group_id:
        raise ValidationError(
            "A subscription cannot be used for a class without a group",
            code=CODE_BASIS_WITHOUT_GROUP,
        )

    subscription = lock_for_update(
        db.session.query(Subscription).filter(Subscription.id == subscription_id)
    ).first()

    if not subscription:
        raise NotFoundError(f"Subscription {subscription_id} not found")

    if subscription.client_id != client_id:
        raise ValidationError(
            "Subscription belongs to another client",
            code=CODE_SUBSCRIPTION_WRONG_CLIENT,
        )

    if subscription.group_id != group_id:
        raise ValidationError(
            "Subscription is not linked to this group",
            code=CODE_SUBSCRIPTION_WRONG_GROUP,
        )

    if subscription.status != SUBSCRIPTION_STATUS_ACTIVE:
        raise ValidationError("Subscription is not active", code=CODE_SUBSCRIPTION_NOT_ACTIVE)

    if subscription.start_date > schedule_date or subscription.end_date < schedule_date:
        raise ValidationError(
            "Subscription is not valid on the class date",
            code=CODE_SUBSCRIPTION_OUT_OF_RANGE,
        )

    if subscription.is_counted and (subscription.remaining_visits or 0) <= 0:
        raise ValidationError(NO_VISITS_LEFT_MESSAGE, code=CODE_NO_VISITS_LEFT)

    return subscription


def deduct(subscription: Subscription) -> None:
    """
    Consume one visit from a counted subscription.

    The UPDATE only matches while remaining_visits >= 1, so a concurrent
    deduction that got there first turns this call into NO_VISITS_LEFT
    instead of a negative balance.
    """
    if not subscription.is_counted:
        return

    if (subscription.remaining_visits or 0) <= 0:
        raise ValidationError(NO_VISITS_LEFT_MESSAGE, code=CODE_NO_VISITS_LEFT)

    updated = db.session.query(Subscription).filter(
        Subscription.id == subscription.id,
        Subscription.remaining_visits >= 1,
    ).update(
        {
            Subscription.remaining_visits: Subscription.remaining_visits - 1,
            Subscription.version: Subscription.version + 1,
        },
        synchronize_session=False,
    )
    if updated == 0:
        raise ValidationError(NO_VISITS_LEFT_MESSAGE, code=CODE_NO_VISITS_LEFT)

    db.session.refresh(subscription)


def restore(subscription: Subscription) -> None:
    """Give one visit back to a counted subscription."""
    if not subscription.is_counted:
        return

    db.session.query(Subscription).filter(
        Subscription.id == subscription.id,
    ).update(
        {
            Subscription.remaining_visits: Subscription.remaining_visits + 1,
            Subscription.version: Subscription.version + 1,
        },
        synchronize_session=False,
    )
    db.session.refresh(subscription)
