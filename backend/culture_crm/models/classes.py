from __future__ import annotations

from ..extensions import db
from culture_crm.time_utils import to_iso_date, to_utc_z, utcnow


# =============================================================================
# SUBSCRIPTION KINDS
# =============================================================================

SUBSCRIPTION_KIND_SINGLE_VISIT = "SINGLE_VISIT"
SUBSCRIPTION_KIND_VISIT_PACK = "VISIT_PACK"
SUBSCRIPTION_KIND_UNLIMITED = "UNLIMITED"

VALID_SUBSCRIPTION_KINDS = (
    SUBSCRIPTION_KIND_SINGLE_VISIT,
    SUBSCRIPTION_KIND_VISIT_PACK,
    SUBSCRIPTION_KIND_UNLIMITED,
)

# Kinds whose remaining_visits counter is consumed by attendance.
COUNTED_SUBSCRIPTION_KINDS = frozenset({SUBSCRIPTION_KIND_SINGLE_VISIT, SUBSCRIPTION_KIND_VISIT_PACK})
UNCOUNTED_SUBSCRIPTION_KINDS = frozenset({SUBSCRIPTION_KIND_UNLIMITED})


def is_counted_kind(kind: str) -> bool:
    """
    Single decision point for "does attendance consume a visit".

    Unknown kinds raise instead of silently falling into either branch.
    """
    if kind in COUNTED_SUBSCRIPTION_KINDS:
        return True
    if kind in UNCOUNTED_SUBSCRIPTION_KINDS:
        return False
    raise ValueError(f"Unknown subscription kind: {kind!r}")


SUBSCRIPTION_STATUS_ACTIVE = "ACTIVE"
SUBSCRIPTION_STATUS_FROZEN = "FROZEN"
SUBSCRIPTION_STATUS_EXPIRED = "EXPIRED"
SUBSCRIPTION_STATUS_CANCELLED = "CANCELLED"

VALID_SUBSCRIPTION_STATUSES = (
    SUBSCRIPTION_STATUS_ACTIVE,
    SUBSCRIPTION_STATUS_FROZEN,
    SUBSCRIPTION_STATUS_EXPIRED,
    SUBSCRIPTION_STATUS_CANCELLED,
)


# =============================================================================
# ATTENDANCE STATUSES
# =============================================================================

ATTENDANCE_PRESENT = "PRESENT"
ATTENDANCE_ABSENT = "ABSENT"
ATTENDANCE_EXCUSED = "EXCUSED"

VALID_ATTENDANCE_STATUSES = (ATTENDANCE_PRESENT, ATTENDANCE_ABSENT, ATTENDANCE_EXCUSED)


class Group(db.Model):
    """A recurring class (studio group) clients subscribe to."""
    __tablename__ = "groups"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "is_active": self.is_active}


class Schedule(db.Model):
    """
    One concrete occurrence of a class on a calendar date.

    group_id is nullable: one-off events and rentals also live in the
    schedule but carry no subscription basis.
    """
    __tablename__ = "schedules"
    __table_args__ = (
        db.Index("ix_schedules_group_date", "group_id", "date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("groups.id"), nullable=True, index=True)
    date = db.Column(db.Date, nullable=False, index=True)
    start_time = db.Column(db.Time, nullable=True)
    end_time = db.Column(db.Time, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="PLANNED")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    group = db.relationship("Group", backref=db.backref("schedules", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "date": to_iso_date(self.date),
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "status": self.status,
            "group": {"id": self.group.id, "name": self.group.name} if self.group else None,
        }


class SubscriptionType(db.Model):
    """Catalogue entry a subscription is sold from."""
    __tablename__ = "subscription_types"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    type = db.Column(db.String(16), nullable=False)  # SINGLE_VISIT, VISIT_PACK, UNLIMITED
    default_visits = db.Column(db.Integer, nullable=True)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "type": self.type}


class Subscription(db.Model):
    """
    A client's purchased entitlement to attend one group.

    remaining_visits is NULL for UNLIMITED kinds. For counted kinds it only
    ever moves by +/-1 per attendance transition, through the guarded atomic
    updates in subscription_ledger.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        db.CheckConstraint(
            "remaining_visits IS NULL OR remaining_visits >= 0",
            name="ck_subscriptions_remaining_visits_non_negative",
        ),
        db.Index("ix_subscriptions_lookup", "client_id", "group_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    group_id = db.Column(db.Integer, db.ForeignKey("groups.id"), nullable=False, index=True)
    subscription_type_id = db.Column(db.Integer, db.ForeignKey("subscription_types.id"), nullable=False)

    remaining_visits = db.Column(db.Integer, nullable=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=SUBSCRIPTION_STATUS_ACTIVE, index=True)

    # Bumped by every ledger update
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    client = db.relationship("Client", backref=db.backref("subscriptions", lazy=True))
    group = db.relationship("Group")
    subscription_type = db.relationship("SubscriptionType")

    @property
    def kind(self) -> str:
        return self.subscription_type.type

    @property
    def is_counted(self) -> bool:
        return is_counted_kind(self.kind)

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} kind={self.kind} remaining={self.remaining_visits}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "group_id": self.group_id,
            "subscription_type": {
                "id": self.subscription_type_id,
                "name": self.subscription_type.name,
                "type": self.subscription_type.type,
            },
            "remaining_visits": self.remaining_visits,
            "start_date": to_iso_date(self.start_date),
            "end_date": to_iso_date(self.end_date),
            "status": self.status,
            "version": self.version,
            "created_at": to_utc_z(self.created_at),
        }


class Attendance(db.Model):
    """
    One client's attendance mark for one schedule occurrence.

    subscription_deducted records whether this mark actually consumed a
    visit; only such marks are reversed when the mark changes or is removed.
    """
    __tablename__ = "attendances"
    __table_args__ = (
        db.UniqueConstraint("schedule_id", "client_id", name="uq_attendances_schedule_client"),
        db.Index("ix_attendances_subscription_status", "subscription_id", "status", "subscription_deducted"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    schedule_id = db.Column(db.Integer, db.ForeignKey("schedules.id"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False)
    subscription_deducted = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)

    marked_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    marked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    schedule = db.relationship("Schedule", backref=db.backref("attendances", lazy=True))
    client = db.relationship("Client", backref=db.backref("attendances", lazy=True))
    subscription = db.relationship("Subscription", backref=db.backref("attendances", lazy=True))
    marked_by_user = db.relationship("User", foreign_keys=[marked_by])

    def to_dict(self) -> dict:
        subscription = self.subscription
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "client_id": self.client_id,
            "subscription_id": self.subscription_id,
            "status": self.status,
            "subscription_deducted": self.subscription_deducted,
            "notes": self.notes,
            "marked_by": self.marked_by,
            "marked_at": to_utc_z(self.marked_at),
            "created_at": to_utc_z(self.created_at),
            "client": self.client.to_summary() if self.client else None,
            "schedule": self.schedule.to_dict() if self.schedule else None,
            "subscription": {
                "id": subscription.id,
                "remaining_visits": subscription.remaining_visits,
                "subscription_type": subscription.subscription_type.to_dict(),
            } if subscription else None,
            "marked_by_user": {
                "id": self.marked_by_user.id,
                "first_name": self.marked_by_user.first_name,
                "last_name": self.marked_by_user.last_name,
            } if self.marked_by_user else None,
        }
