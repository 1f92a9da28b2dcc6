"""
Recommendation Service

Batch upsert, listing and manual status changes of compensation line items.

Rules:
  - Upserts are keyed by (cycle, employee, rec_type).
  - One commit per batch of ``BULK_BATCH_SIZE`` items; batches run in input order.
  - Locked recommendations (held by calibration) refuse manual status changes.
  - APPROVED and REJECTED are reachable only from SUBMITTED or ESCALATED.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import select

from compcycle.core.exceptions import InvalidStateError, ValidationError
from compcycle.models import db
from compcycle.models.audit import write_audit
from compcycle.models.cycle import (
    DECIDABLE_STATUSES,
    REC_APPROVED,
    REC_DRAFT,
    REC_REJECTED,
    RECOMMENDATION_STATUSES,
    RECOMMENDATION_TYPES,
    CompCycle,
    CompRecommendation,
)
from compcycle.models.employee import Employee
from compcycle.services.budget_ledger import recalculate_budget_spent
from compcycle.services.helpers.scoped_queries import get_scoped
from compcycle.utils.helpers import chunked, paginate_query, utcnow

logger = logging.getLogger(__name__)

_DECISION_VERBS = {REC_APPROVED: "approve", REC_REJECTED: "reject"}


def _batch_size() -> int:
    return int(current_app.config.get("BULK_BATCH_SIZE", 500))


def _to_float(value, field: str, index: int) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"{field} must be a number", details={"index": index, "field": field},
        ) from None


def _normalise_items(tenant_id: int, items: list[dict]) -> list[dict]:
    """Validate the whole payload up front so no batch commits half a bad request."""
    if not isinstance(items, list) or not items:
        raise ValidationError("recommendations must be a non-empty list")

    normalised = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError("Each recommendation must be an object", details={"index": index})
        employee_id = item.get("employee_id")
        rec_type = (item.get("rec_type") or "").upper()
        if not employee_id:
            raise ValidationError("employee_id is required", details={"index": index})
        if rec_type not in RECOMMENDATION_TYPES:
            raise ValidationError(
                f"rec_type must be one of: {', '.join(sorted(RECOMMENDATION_TYPES))}",
                details={"index": index},
            )
        normalised.append({
            "employee_id": str(employee_id),
            "rec_type": rec_type,
            "current_value": _to_float(item.get("current_value", 0), "current_value", index),
            "proposed_value": _to_float(item.get("proposed_value", 0), "proposed_value", index),
            "justification": item.get("justification"),
            "approver_user_id": item.get("approver_user_id"),
        })

    employee_ids = {n["employee_id"] for n in normalised}
    known = set(db.session.execute(
        select(Employee.id).where(Employee.tenant_id == tenant_id, Employee.id.in_(employee_ids))
    ).scalars())
    unknown = sorted(employee_ids - known)
    if unknown:
        raise ValidationError("Unknown employee id(s)", details={"employee_ids": unknown})
    return normalised


def bulk_create_recommendations(
    tenant_id: int,
    cycle_id: str,
    items: list[dict],
    acting_user_id: str | None = None,
) -> dict:
    """
    Upsert recommendations in batches.

    Updates always overwrite current/proposed values; justification and
    approver_user_id only when the item supplies them. New rows start DRAFT.

    Returns:
        {"cycle_id", "created", "updated", "total"}
    """
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    normalised = _normalise_items(tenant_id, items)

    created = updated = 0
    for batch in chunked(normalised, _batch_size()):
        keys = {(n["employee_id"], n["rec_type"]) for n in batch}
        existing = {
            (r.employee_id, r.rec_type): r
            for r in db.session.execute(
                select(CompRecommendation).where(
                    CompRecommendation.cycle_id == cycle.id,
                    CompRecommendation.employee_id.in_({k[0] for k in keys}),
                )
            ).scalars()
        }

        for item in batch:
            key = (item["employee_id"], item["rec_type"])
            rec = existing.get(key)
            if rec is not None:
                rec.current_value = item["current_value"]
                rec.proposed_value = item["proposed_value"]
                if item["justification"] is not None:
                    rec.justification = item["justification"]
                if item["approver_user_id"] is not None:
                    rec.approver_user_id = item["approver_user_id"]
                updated += 1
            else:
                rec = CompRecommendation(
                    cycle_id=cycle.id,
                    employee_id=item["employee_id"],
                    rec_type=item["rec_type"],
                    current_value=item["current_value"],
                    proposed_value=item["proposed_value"],
                    justification=item["justification"],
                    approver_user_id=item["approver_user_id"],
                    status=REC_DRAFT,
                )
                db.session.add(rec)
                existing[key] = rec
                created += 1

        db.session.commit()

    recalculate_budget_spent(cycle.id)
    logger.info(
        "Bulk upsert: created=%d updated=%d", created, updated,
        extra={"tenant_id": tenant_id, "cycle_id": cycle.id, "user_id": acting_user_id},
    )
    return {"cycle_id": cycle.id, "created": created, "updated": updated, "total": len(normalised)}


def list_recommendations(
    tenant_id: int,
    cycle_id: str,
    *,
    page: int = 1,
    limit: int = 50,
    status: str | None = None,
    rec_type: str | None = None,
    department: str | None = None,
    level: str | None = None,
) -> dict:
    """Paginated recommendation list with employee details."""
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)

    q = (
        CompRecommendation.query
        .join(Employee, Employee.id == CompRecommendation.employee_id)
        .filter(CompRecommendation.cycle_id == cycle.id)
    )
    if status:
        q = q.filter(CompRecommendation.status == status.upper())
    if rec_type:
        q = q.filter(CompRecommendation.rec_type == rec_type.upper())
    if department:
        q = q.filter(Employee.department == department)
    if level:
        q = q.filter(Employee.level == level)
    q = q.order_by(Employee.department, Employee.last_name, CompRecommendation.rec_type)

    page_data = paginate_query(q, page, limit)
    page_data["items"] = [r.to_dict(include_employee=True) for r in page_data["items"]]
    return page_data


def update_recommendation_status(
    tenant_id: int,
    cycle_id: str,
    recommendation_id: str,
    status: str,
    acting_user_id: str | None = None,
    justification: str | None = None,
) -> dict:
    """Manually set a recommendation's status.

    APPROVED stamps the approver and time. Locked rows are refused, and only
    SUBMITTED or ESCALATED rows can be approved or rejected.
    """
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    rec = get_scoped(CompRecommendation, recommendation_id, cycle_id=cycle.id)

    status = (status or "").upper()
    if status not in RECOMMENDATION_STATUSES:
        raise ValidationError(
            f"status must be one of: {', '.join(sorted(RECOMMENDATION_STATUSES))}"
        )
    if rec.locked:
        raise InvalidStateError("Recommendation is locked for calibration")
    if status in _DECISION_VERBS and rec.status not in DECIDABLE_STATUSES:
        raise InvalidStateError(
            f"Cannot {_DECISION_VERBS[status]} recommendation in {rec.status} status",
            details={"current": rec.status, "allowed": list(DECIDABLE_STATUSES)},
        )

    previous = rec.status
    rec.status = status
    if justification is not None:
        rec.justification = justification
    if status == REC_APPROVED:
        rec.approver_user_id = acting_user_id or rec.approver_user_id
        rec.approved_at = utcnow()

    try:
        write_audit(
            tenant_id=tenant_id,
            user_id=acting_user_id,
            action="RECOMMENDATION_STATUS_CHANGED",
            entity_type="comp_recommendation",
            entity_id=rec.id,
            changes={"status": {"old": previous, "new": status}},
        )
    except Exception:
        logger.warning("Audit log failed for recommendation status, main flow unaffected", exc_info=True)

    db.session.commit()
    logger.info("Recommendation %s status %s -> %s", rec.id, previous, status,
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return rec.to_dict(include_employee=True)
