# Overview: Service-layer operations for client activity tracking; encapsulates business logic and database work.

"""
Client activity tracking.

Activity (attendance marks, payments) keeps a client ACTIVE; a periodic job
flips clients without activity for a number of months to INACTIVE.

reactivate_client_if_needed() is best-effort: it is called after the
caller's transaction has committed, uses its own commit, and never raises.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import and_, or_

from ..extensions import db
from ..models import Client
from ..models.people import CLIENT_STATUS_ACTIVE, CLIENT_STATUS_INACTIVE
from culture_crm.time_utils import subtract_months, utcnow


DEFAULT_INACTIVITY_MONTHS = 6
DEFAULT_BATCH_SIZE = 100


def reactivate_client_if_needed(client_id: int) -> bool:
    """
    Flip an INACTIVE client back to ACTIVE, or just refresh last_activity_at.

    Returns True when the client was reactivated.
    """
    try:
        client = db.session.get(Client, client_id)
        if client is None:
            return False

        reactivated = False
        if client.status == CLIENT_STATUS_INACTIVE:
            client.status = CLIENT_STATUS_ACTIVE
            reactivated = True
        client.last_activity_at = utcnow()
        db.session.commit()

        if reactivated:
            current_app.logger.info("Client %s auto-reactivated due to new activity", client_id)
        return reactivated
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update activity for client %s", client_id)
        return False


def deactivate_inactive_clients(
    *,
    months: int = DEFAULT_INACTIVITY_MONTHS,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> int:
    """
    Mark ACTIVE clients without activity for `months` months as INACTIVE.

    A client counts as inactive when last_activity_at is older than the
    cut-off, or when it has never been active and was created before it.
    VIP clients are never touched. Rows are updated in batches of
    batch_size, one commit per batch.

    Returns:
        Number of clients deactivated
    """
    if months < 1:
        raise ValueError("months must be >= 1")
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    cutoff = subtract_months(utcnow(), months)
    current_app.logger.info("Starting auto-deactivation of clients inactive since %s", cutoff.isoformat())

    total = 0
    while True:
        ids = [
            row.id
            for row in db.session.query(Client.id)
            .filter(
                Client.status == CLIENT_STATUS_ACTIVE,
                or_(
                    Client.last_activity_at < cutoff,
                    and_(Client.last_activity_at.is_(None), Client.created_at < cutoff),
                ),
            )
            .order_by(Client.id.asc())
            .limit(batch_size)
            .all()
        ]
        if not ids:
            break

        db.session.query(Client).filter(Client.id.in_(ids)).update(
            {Client.status: CLIENT_STATUS_INACTIVE, Client.updated_at: utcnow()},
            synchronize_session=False,
        )
        db.session.commit()
        total += len(ids)

        if len(ids) < batch_size:
            break

    current_app.logger.info("Auto-deactivation completed. Deactivated %d clients.", total)
    return total
