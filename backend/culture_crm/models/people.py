from __future__ import annotations

from ..extensions import db
from culture_crm.time_utils import to_utc_z, utcnow


CLIENT_STATUS_ACTIVE = "ACTIVE"
CLIENT_STATUS_INACTIVE = "INACTIVE"
CLIENT_STATUS_VIP = "VIP"

VALID_CLIENT_STATUSES = (CLIENT_STATUS_ACTIVE, CLIENT_STATUS_INACTIVE, CLIENT_STATUS_VIP)


class User(db.Model):
    """
    Staff member (administrator, instructor) acting on records.

    Authentication lives outside this service; the row only exists so that
    attendance marks and invoices can be attributed.
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(128), nullable=False)
    last_name = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(255), nullable=True, unique=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "is_active": self.is_active,
        }


class Client(db.Model):
    """
    Person attending classes, buying subscriptions or renting rooms.

    status flips ACTIVE <-> INACTIVE through activity tracking; VIP is set
    by staff and never touched automatically.
    """
    __tablename__ = "clients"
    __table_args__ = (
        db.Index("ix_clients_status_last_activity", "status", "last_activity_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(128), nullable=False)
    last_name = db.Column(db.String(128), nullable=False)
    middle_name = db.Column(db.String(128), nullable=True)
    phone = db.Column(db.String(32), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=CLIENT_STATUS_ACTIVE, index=True)
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Client id={self.id} status={self.status}>"

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "middle_name": self.middle_name,
            "phone": self.phone,
        }

    def to_dict(self) -> dict:
        data = self.to_summary()
        data.update({
            "status": self.status,
            "last_activity_at": to_utc_z(self.last_activity_at),
            "created_at": to_utc_z(self.created_at),
        })
        return data
