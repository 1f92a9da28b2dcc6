"""
Compensation Cycle Platform
Notification Service.

Central sink for approval nudges and monitor alerts. Both helpers add and
flush; the caller decides when to commit so notifications land in the same
transaction as the event that caused them.
"""

from compcycle.models import db
from compcycle.models.notification import Notification


class NotificationService:
    """Writes and reads notification rows. No state of its own."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, tenant_id, user_id, type, title, body="", metadata=None,
               entity_type="", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (flushed, not committed).
        """
        notif = Notification(
            tenant_id=tenant_id,
            user_id=user_id,
            type=type,
            title=title,
            body=body,
            meta=metadata or {},
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.flush()
        return notif

    @staticmethod
    def bulk_create(*, tenant_id, user_ids, type, title, body="", metadata=None,
                    entity_type="", entity_id=None):
        """
        Send the same notification to several recipients in one flush.

        Returns:
            List of created Notification instances.
        """
        notifications = [
            Notification(
                tenant_id=tenant_id,
                user_id=uid,
                type=type,
                title=title,
                body=body,
                meta=dict(metadata or {}),
                entity_type=entity_type,
                entity_id=entity_id,
            )
            for uid in user_ids
        ]
        db.session.add_all(notifications)
        db.session.flush()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_entity(tenant_id, entity_type, entity_id):
        """Query of notifications linked to an entity, newest first."""
        return (
            Notification.query
            .filter_by(tenant_id=tenant_id, entity_type=entity_type, entity_id=str(entity_id))
            .order_by(Notification.created_at.desc(), Notification.id.desc())
        )
