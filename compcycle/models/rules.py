"""
Compensation Cycle Platform
Compensation rule models.

Models:
    - RuleSet: named, versionable group of rules (DRAFT / ACTIVE / ARCHIVED)
    - Rule: condition list + action list evaluated against an employee

Condition and action payloads are stored as JSON lists, e.g.::

    conditions = [{"field": "department", "operator": "eq", "value": "Sales"}]
    actions = [{"type": "applyCap", "params": {"amount": 5000, "target": "merit"}}]
"""

from compcycle.models import db
from compcycle.models.base import TenantModel, _utcnow, _uuid


RULE_SET_STATUSES = {"DRAFT", "ACTIVE", "ARCHIVED"}
RULE_TYPES = {"MERIT", "BONUS", "LTI", "PRORATION", "CAP", "FLOOR", "ELIGIBILITY", "CUSTOM"}


class RuleSet(TenantModel):
    __tablename__ = "rule_sets"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(20), nullable=False, default="DRAFT")
    version = db.Column(db.Integer, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    rules = db.relationship(
        "Rule", backref="rule_set", lazy="select",
        cascade="all, delete-orphan", order_by="Rule.priority",
    )

    def enabled_rules(self) -> list:
        return [r for r in self.rules if r.enabled]

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "version": self.version,
            "rules": [r.to_dict() for r in self.rules],
        }

    def __repr__(self):
        return f"<RuleSet {self.name} [{self.status}]>"


class Rule(db.Model):
    __tablename__ = "rules"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    rule_set_id = db.Column(
        db.String(36), db.ForeignKey("rule_sets.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    rule_type = db.Column(db.String(20), nullable=False, default="CUSTOM")
    priority = db.Column(db.Integer, nullable=False, default=0,
                         comment="Lower number runs first")
    conditions = db.Column(db.JSON, default=list)
    actions = db.Column(db.JSON, default=list)
    enabled = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "type": self.rule_type,
            "priority": self.priority,
            "conditions": self.conditions if isinstance(self.conditions, list) else [],
            "actions": self.actions if isinstance(self.actions, list) else [],
            "enabled": bool(self.enabled),
        }

    def __repr__(self):
        return f"<Rule {self.name} p={self.priority}>"
