"""
Compensation Cycle Service

CRUD and read models for compensation cycles. Status changes never happen
here; they go through ``cycle_lifecycle.transition``.

Rules:
  - tenant_id is always an explicit parameter (never from g).
  - Cycles are never hard-deleted; CANCELLED is the terminal "removed" state.
  - Settings writes merge into the existing bag; the transition and monitor
    history keys are read-only to callers.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from compcycle.core.exceptions import InvalidStateError, ValidationError
from compcycle.models import db
from compcycle.models.audit import write_audit
from compcycle.models.cycle import (
    CYCLE_STATUSES,
    CYCLE_TYPES,
    REC_APPROVED,
    RESERVED_SETTINGS_KEYS,
    CompCycle,
    CompRecommendation,
)
from compcycle.services.budget_ledger import recalculate_budget_remaining
from compcycle.services.cycle_lifecycle import get_allowed_transitions
from compcycle.services.helpers.scoped_queries import get_scoped
from compcycle.utils.helpers import paginate_query, parse_datetime

logger = logging.getLogger(__name__)

# Fields a PATCH may touch; status moves only through transition()
_UPDATABLE_FIELDS = ("name", "cycle_type", "budget_total", "currency", "start_date", "end_date")
_TERMINAL_STATUSES = {"COMPLETED", "CANCELLED"}


def _audit(**kwargs) -> None:
    try:
        write_audit(**kwargs)
    except Exception:
        logger.warning("Audit log failed for %s, main flow unaffected", kwargs.get("action"), exc_info=True)


def _clean_fields(data: dict, *, partial: bool) -> dict:
    """Validate and coerce cycle input. Raises ValidationError."""
    out: dict = {}

    if "name" in data or not partial:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required")
        out["name"] = name

    if "cycle_type" in data or not partial:
        cycle_type = (data.get("cycle_type") or "MERIT").upper()
        if cycle_type not in CYCLE_TYPES:
            raise ValidationError(f"cycle_type must be one of: {', '.join(sorted(CYCLE_TYPES))}")
        out["cycle_type"] = cycle_type

    if "budget_total" in data or not partial:
        try:
            budget_total = float(data.get("budget_total") or 0)
        except (TypeError, ValueError):
            raise ValidationError("budget_total must be a number") from None
        if budget_total < 0:
            raise ValidationError("budget_total must not be negative")
        out["budget_total"] = budget_total

    if "currency" in data or not partial:
        currency = (data.get("currency") or "USD").upper()
        if len(currency) != 3:
            raise ValidationError("currency must be a 3-letter ISO code")
        out["currency"] = currency

    for field in ("start_date", "end_date"):
        if field in data or not partial:
            value = parse_datetime(data.get(field))
            if value is None:
                raise ValidationError(f"{field} is required (ISO date)", details={"field": field})
            out[field] = value

    return out


def _caller_settings(raw) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError("settings must be an object")
    reserved = sorted(RESERVED_SETTINGS_KEYS.intersection(raw))
    if reserved:
        raise ValidationError(
            f"settings keys are read-only: {', '.join(reserved)}", details={"fields": reserved},
        )
    return raw


def create_cycle(tenant_id: int, data: dict, acting_user_id: str | None = None) -> dict:
    """Create a cycle in DRAFT."""
    fields = _clean_fields(data or {}, partial=False)
    if fields["end_date"] <= fields["start_date"]:
        raise ValidationError("end_date must be after start_date")

    settings = _caller_settings(data.get("settings") or {})

    cycle = CompCycle(tenant_id=tenant_id, status="DRAFT", settings=settings, **fields)
    db.session.add(cycle)
    db.session.flush()

    _audit(
        tenant_id=tenant_id,
        user_id=acting_user_id,
        action="CYCLE_CREATED",
        entity_type="comp_cycle",
        entity_id=cycle.id,
        changes={"name": cycle.name, "cycle_type": cycle.cycle_type, "budget_total": cycle.budget_total},
    )
    db.session.commit()
    logger.info("Cycle created: %s", cycle.name, extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return cycle.to_dict()


def update_cycle(tenant_id: int, cycle_id: str, data: dict, acting_user_id: str | None = None) -> dict:
    """Patch cycle fields and merge settings. Terminal cycles are read-only."""
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    if cycle.status in _TERMINAL_STATUSES:
        raise InvalidStateError(f"Cannot update a {cycle.status.lower()} cycle")
    if "status" in (data or {}):
        raise ValidationError("status changes go through the transition endpoint")
    settings = (data or {}).get("settings")
    if settings is not None:
        _caller_settings(settings)

    fields = _clean_fields({k: v for k, v in (data or {}).items() if k in _UPDATABLE_FIELDS},
                           partial=True)
    start = fields.get("start_date", cycle.start_date)
    end = fields.get("end_date", cycle.end_date)
    if start and end and parse_datetime(end) <= parse_datetime(start):
        raise ValidationError("end_date must be after start_date")

    changes = {}
    for field, value in fields.items():
        old = getattr(cycle, field)
        if old != value:
            changes[field] = {"old": old, "new": value}
            setattr(cycle, field, value)

    if settings is not None:
        cycle.store_settings(cycle.settings_bag.with_overrides(settings))
        changes["settings"] = sorted(settings)

    if "budget_total" in changes:
        db.session.flush()
        recalculate_budget_remaining(cycle.id, commit=False)

    _audit(
        tenant_id=tenant_id,
        user_id=acting_user_id,
        action="CYCLE_UPDATED",
        entity_type="comp_cycle",
        entity_id=cycle.id,
        changes=changes,
    )
    db.session.commit()
    logger.info("Cycle updated (%s)", ", ".join(sorted(changes)) or "no changes",
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return cycle.to_dict()


def get_cycle(tenant_id: int, cycle_id: str) -> dict:
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    data = cycle.to_dict(include_counts=True)
    data["allowed_transitions"] = get_allowed_transitions(cycle.status)
    return data


def list_cycles(
    tenant_id: int,
    *,
    page: int = 1,
    limit: int = 20,
    status: str | None = None,
    cycle_type: str | None = None,
) -> dict:
    """Paginated cycle list, newest first."""
    q = CompCycle.query_for_tenant(tenant_id)
    if status:
        status = status.upper()
        if status not in CYCLE_STATUSES:
            raise ValidationError(f"Unknown status: {status}")
        q = q.filter(CompCycle.status == status)
    if cycle_type:
        q = q.filter(CompCycle.cycle_type == cycle_type.upper())
    q = q.order_by(CompCycle.created_at.desc(), CompCycle.id.asc())

    page_data = paginate_query(q, page, limit)
    page_data["items"] = [c.to_dict() for c in page_data["items"]]
    return page_data


def get_cycle_summary(tenant_id: int, cycle_id: str) -> dict:
    """
    Dashboard read model: budget totals, recommendation breakdown,
    department utilisation and calibration session count.
    """
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    budgets = cycle.budgets

    allocated = sum(float(b.allocated or 0) for b in budgets)
    spent = sum(float(b.spent or 0) for b in budgets)
    budget_total = float(cycle.budget_total or 0)

    by_status = dict(db.session.execute(
        select(CompRecommendation.status, func.count(CompRecommendation.id))
        .where(CompRecommendation.cycle_id == cycle.id)
        .group_by(CompRecommendation.status)
    ).all())
    by_type = dict(db.session.execute(
        select(CompRecommendation.rec_type, func.count(CompRecommendation.id))
        .where(CompRecommendation.cycle_id == cycle.id)
        .group_by(CompRecommendation.rec_type)
    ).all())
    total = sum(by_status.values())
    approved = by_status.get(REC_APPROVED, 0)

    departments = [
        {
            **b.to_dict(),
            "utilization_pct": round(b.spent / b.allocated * 100, 2) if b.allocated else 0.0,
        }
        for b in budgets
    ]

    return {
        "cycle": cycle.to_dict(),
        "budget": {
            "total": budget_total,
            "allocated": allocated,
            "spent": spent,
            "remaining": allocated - spent,
            "drift_pct": (
                round((allocated - budget_total) / budget_total * 100, 2) if budget_total > 0 else 0.0
            ),
            "utilization_pct": round(spent / budget_total * 100, 2) if budget_total > 0 else 0.0,
        },
        "recommendations": {
            "total": total,
            "by_status": by_status,
            "by_type": by_type,
            "completion_pct": round(approved / total * 100, 2) if total else 0.0,
        },
        "departments": departments,
        "calibration_sessions": cycle.calibration_sessions.count(),
    }
