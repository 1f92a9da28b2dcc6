"""
Append-only audit trail for cycle, recommendation and calibration events.

Services call ``write_audit`` inside their own transaction; the row is
flushed, never committed here.
"""

import json

from compcycle.models import db
from compcycle.models.base import _utcnow

AUDIT_ACTIONS = frozenset({
    # cycle
    "CYCLE_CREATED",
    "CYCLE_UPDATED",
    "CYCLE_TRANSITIONED",
    "BUDGETS_SET",
    # recommendations / approvals
    "RECOMMENDATION_APPROVED",
    "RECOMMENDATION_REJECTED",
    "RECOMMENDATION_ESCALATED",
    "RECOMMENDATION_STATUS_CHANGED",
    "ESCALATION_SCHEDULED",
    "NUDGE_SENT",
    # calibration
    "CALIBRATION_SESSION_CREATED",
    "CALIBRATION_SESSION_UPDATED",
    "CALIBRATION_RECOMMENDATIONS_LOCKED",
    "CALIBRATION_RECOMMENDATIONS_UNLOCKED",
})


class AuditLog(db.Model):
    """One row per action; ``changes_json`` holds the before/after payload."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="SET NULL"), index=True)
    # NULL for worker-initiated actions
    user_id = db.Column(db.String(36), index=True)
    entity_type = db.Column(db.String(40), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    changes_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def changes(self) -> dict:
        try:
            return json.loads(self.changes_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "action": self.action,
            "entity": f"{self.entity_type}/{self.entity_id}",
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "changes": self.changes,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}/{self.entity_id}>"


def write_audit(
    *,
    tenant_id: int | None,
    user_id: str | None,
    action: str,
    entity_type: str,
    entity_id: str,
    changes: dict | None = None,
) -> AuditLog:
    """Add and flush one audit row. Unknown actions raise ValueError."""
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    row = AuditLog(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        changes_json=json.dumps(changes or {}, default=str),
    )
    db.session.add(row)
    db.session.flush()
    return row
