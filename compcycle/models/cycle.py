"""
Compensation Cycle Platform
Cycle domain models.

Models:
    - CompCycle: a merit / bonus / LTI review cycle with its lifecycle status
    - CycleBudget: allocation ledger row per cycle × department (× manager)
    - CompRecommendation: one compensation line item for one employee
    - CalibrationSession: group review over a snapshot of recommendations

Value objects:
    - CycleSettings: typed view over the ``settings`` JSON bag
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from compcycle.models import db
from compcycle.models.base import TenantModel, _utcnow, _uuid


# ═════════════════════════════════════════════════════════════════════════════
# Constants
# ═════════════════════════════════════════════════════════════════════════════

CYCLE_STATUSES = {
    "DRAFT", "PLANNING", "ACTIVE", "CALIBRATION", "APPROVAL", "COMPLETED", "CANCELLED",
}
CYCLE_TYPES = {"MERIT", "BONUS", "LTI", "COMBINED"}

# Cycles the monitor suite watches
MONITORED_CYCLE_STATUSES = ("ACTIVE", "CALIBRATION", "APPROVAL")

CYCLE_TRANSITIONS = {
    "DRAFT": ["PLANNING", "CANCELLED"],
    "PLANNING": ["ACTIVE", "DRAFT", "CANCELLED"],
    "ACTIVE": ["CALIBRATION", "APPROVAL", "CANCELLED"],
    "CALIBRATION": ["APPROVAL", "ACTIVE", "CANCELLED"],
    "APPROVAL": ["COMPLETED", "CALIBRATION", "CANCELLED"],
    "COMPLETED": [],
    "CANCELLED": [],
}

REC_DRAFT = "DRAFT"
REC_SUBMITTED = "SUBMITTED"
REC_APPROVED = "APPROVED"
REC_REJECTED = "REJECTED"
REC_ESCALATED = "ESCALATED"

RECOMMENDATION_STATUSES = {REC_DRAFT, REC_SUBMITTED, REC_APPROVED, REC_REJECTED, REC_ESCALATED}
RECOMMENDATION_TYPES = {"MERIT_INCREASE", "BONUS", "LTI_GRANT", "PROMOTION", "ADJUSTMENT"}

# Statuses a human approver may still act on
DECIDABLE_STATUSES = (REC_SUBMITTED, REC_ESCALATED)
# Statuses a calibration session may lock
LOCKABLE_STATUSES = (REC_DRAFT, REC_SUBMITTED)

SESSION_ACTIVE = "ACTIVE"
SESSION_COMPLETED = "COMPLETED"
SESSION_CANCELLED = "CANCELLED"
SESSION_STATUSES = {SESSION_ACTIVE, SESSION_COMPLETED, SESSION_CANCELLED}

# Reserved key inside CalibrationSession.outcomes
SESSION_METADATA_KEY = "_metadata"


# ═════════════════════════════════════════════════════════════════════════════
# Settings bag
# ═════════════════════════════════════════════════════════════════════════════

# attribute name -> stored JSON key
_SETTINGS_KEYS = {
    "approval_chain": "approvalChain",
    "escalation_delay_ms": "escalationDelayMs",
    "last_transition": "lastTransition",
    "transition_history": "transitionHistory",
    "last_monitor_run": "lastMonitorRun",
    "monitor_history": "monitorHistory",
}

# Written only by transitions and monitor runs
RESERVED_SETTINGS_KEYS = frozenset(
    {"lastTransition", "transitionHistory", "lastMonitorRun", "monitorHistory"}
)


@dataclass(frozen=True)
class CycleSettings:
    """Typed view of ``CompCycle.settings``.

    Writers derive a new instance and store it whole; keys this class does not
    know about travel in ``extra`` so they survive every write.
    """

    approval_chain: list[str] | None = None
    escalation_delay_ms: int | None = None
    last_transition: dict | None = None
    transition_history: list[dict] = field(default_factory=list)
    last_monitor_run: dict | None = None
    monitor_history: list[dict] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict | None) -> CycleSettings:
        raw = dict(raw) if isinstance(raw, dict) else {}
        values: dict[str, Any] = {}
        for attr, key in _SETTINGS_KEYS.items():
            if key in raw:
                values[attr] = raw.pop(key)
        if not isinstance(values.get("transition_history"), list):
            values["transition_history"] = []
        if not isinstance(values.get("monitor_history"), list):
            values["monitor_history"] = []
        return cls(extra=raw, **values)

    def to_dict(self) -> dict:
        out = dict(self.extra)
        for attr, key in _SETTINGS_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            out[key] = value
        return out

    def with_transition(self, record: dict) -> CycleSettings:
        return replace(
            self,
            last_transition=record,
            transition_history=[*self.transition_history, record],
        )

    def with_monitor_run(self, run: dict, keep: int) -> CycleSettings:
        history = [*self.monitor_history, run]
        return replace(self, last_monitor_run=run, monitor_history=history[-keep:])

    def with_overrides(self, raw: dict) -> CycleSettings:
        """Merge caller-supplied keys over the current bag.

        Reserved history keys in ``raw`` are ignored; the stored audit trail
        only grows through ``with_transition`` and ``with_monitor_run``.
        """
        merged = self.to_dict()
        merged.update({k: v for k, v in (raw or {}).items() if k not in RESERVED_SETTINGS_KEYS})
        return CycleSettings.from_dict(merged)


# ═════════════════════════════════════════════════════════════════════════════
# CompCycle
# ═════════════════════════════════════════════════════════════════════════════

class CompCycle(TenantModel):
    __tablename__ = "comp_cycles"
    __table_args__ = (
        db.Index("ix_comp_cycles_tenant_status", "tenant_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    cycle_type = db.Column(db.String(20), nullable=False, default="MERIT",
                           comment="MERIT, BONUS, LTI, COMBINED")
    status = db.Column(db.String(20), nullable=False, default="DRAFT")
    budget_total = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False)
    settings = db.Column(db.JSON, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    budgets = db.relationship(
        "CycleBudget", backref="cycle", lazy="select",
        cascade="all, delete-orphan", order_by="CycleBudget.department",
    )
    recommendations = db.relationship(
        "CompRecommendation", backref="cycle", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    calibration_sessions = db.relationship(
        "CalibrationSession", backref="cycle", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    @property
    def settings_bag(self) -> CycleSettings:
        return CycleSettings.from_dict(self.settings)

    def store_settings(self, bag: CycleSettings) -> None:
        # Assign a fresh dict so the JSON column registers the change
        self.settings = bag.to_dict()

    def to_dict(self, include_counts=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "cycle_type": self.cycle_type,
            "status": self.status,
            "budget_total": self.budget_total,
            "currency": self.currency,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "settings": self.settings or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_counts:
            d["recommendation_count"] = self.recommendations.count()
            d["budget_count"] = len(self.budgets)
        return d

    def __repr__(self):
        return f"<CompCycle {self.id}: {self.name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# CycleBudget
# ═════════════════════════════════════════════════════════════════════════════

class CycleBudget(db.Model):
    __tablename__ = "cycle_budgets"
    __table_args__ = (
        db.Index("ix_cycle_budgets_cycle_department", "cycle_id", "department"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    cycle_id = db.Column(
        db.String(36), db.ForeignKey("comp_cycles.id", ondelete="CASCADE"), nullable=False,
    )
    department = db.Column(db.String(100), nullable=False)
    manager_id = db.Column(db.String(36), nullable=True)
    allocated = db.Column(db.Float, nullable=False, default=0.0)
    spent = db.Column(db.Float, nullable=False, default=0.0)
    remaining = db.Column(db.Float, nullable=False, default=0.0)
    drift_pct = db.Column(db.Float, nullable=False, default=0.0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "cycle_id": self.cycle_id,
            "department": self.department,
            "manager_id": self.manager_id,
            "allocated": self.allocated,
            "spent": self.spent,
            "remaining": self.remaining,
            "drift_pct": self.drift_pct,
        }

    def __repr__(self):
        return f"<CycleBudget {self.department}: {self.spent}/{self.allocated}>"


# ═════════════════════════════════════════════════════════════════════════════
# CompRecommendation
# ═════════════════════════════════════════════════════════════════════════════

class CompRecommendation(db.Model):
    __tablename__ = "comp_recommendations"
    __table_args__ = (
        db.UniqueConstraint("cycle_id", "employee_id", "rec_type",
                            name="uq_recommendation_cycle_employee_type"),
        db.Index("ix_comp_recommendations_cycle_status", "cycle_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    cycle_id = db.Column(
        db.String(36), db.ForeignKey("comp_cycles.id", ondelete="CASCADE"), nullable=False,
    )
    employee_id = db.Column(
        db.String(36), db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False,
    )
    rec_type = db.Column(db.String(30), nullable=False)
    current_value = db.Column(db.Float, nullable=False, default=0.0)
    proposed_value = db.Column(db.Float, nullable=False, default=0.0)
    justification = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=REC_DRAFT)
    locked = db.Column(db.Boolean, nullable=False, default=False,
                       comment="Held by an active calibration session")
    approver_user_id = db.Column(db.String(36), nullable=True, index=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    employee = db.relationship("Employee", lazy="joined")

    @property
    def change_amount(self) -> float:
        return float(self.proposed_value or 0) - float(self.current_value or 0)

    def to_dict(self, include_employee=False):
        d = {
            "id": self.id,
            "cycle_id": self.cycle_id,
            "employee_id": self.employee_id,
            "rec_type": self.rec_type,
            "current_value": self.current_value,
            "proposed_value": self.proposed_value,
            "justification": self.justification,
            "status": self.status,
            "locked": bool(self.locked),
            "approver_user_id": self.approver_user_id,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_employee and self.employee is not None:
            d["employee"] = self.employee.to_dict()
        return d

    def __repr__(self):
        return f"<CompRecommendation {self.id}: {self.rec_type} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# CalibrationSession
# ═════════════════════════════════════════════════════════════════════════════

class CalibrationSession(db.Model):
    __tablename__ = "calibration_sessions"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    cycle_id = db.Column(
        db.String(36), db.ForeignKey("comp_cycles.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=SESSION_ACTIVE)
    participants = db.Column(db.JSON, default=list,
                             comment="Snapshot of recommendations at session creation")
    outcomes = db.Column(db.JSON, default=dict,
                         comment="recommendation_id -> adjustment record")
    created_by = db.Column(db.String(36), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def participant_ids(self) -> list[str]:
        return [p["recommendation_id"] for p in (self.participants or [])]

    @property
    def is_open(self) -> bool:
        return self.status == SESSION_ACTIVE

    def to_dict(self):
        return {
            "id": self.id,
            "cycle_id": self.cycle_id,
            "name": self.name,
            "status": self.status,
            "participants": self.participants or [],
            "participant_count": len(self.participants or []),
            "outcomes": self.outcomes or {},
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<CalibrationSession {self.id}: {self.name} [{self.status}]>"
