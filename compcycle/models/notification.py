"""
Compensation Cycle Platform
Notification domain model.

Models:
    - Notification: in-app message to one user (nudge or monitor alert)

Monitor alerts and approval nudges both land here; alerts are linked to their
cycle through ``entity_type="comp_cycle"`` / ``entity_id``.
"""

from compcycle.models import db
from compcycle.models.base import _utcnow


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_entity", "entity_type", "entity_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(db.String(36), nullable=False, index=True, comment="Recipient user id")
    type = db.Column(db.String(40), nullable=False,
                     comment="APPROVAL_NUDGE, BUDGET_DRIFT, POLICY_VIOLATION, OUTLIER, EXEC_SUMMARY")
    title = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, default="")
    # ``metadata`` is reserved on declarative models
    meta = db.Column("metadata", db.JSON, default=dict)

    # Link to source entity
    entity_type = db.Column(db.String(40), default="")
    entity_id = db.Column(db.String(36), nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "metadata": self.meta or {},
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
