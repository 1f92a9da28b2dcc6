"""
Approval & Escalation Service

Bulk approve / reject, pending queues, delayed auto-escalation and approver
nudges for cycle recommendations.

Race safety: every status write is a conditional UPDATE on the expected
status and ``locked = false``; the affected row count decides whether the
write happened. A human decision and a delayed escalation touching the same
row can therefore never both apply.

Usage:
    from compcycle.services.approval_service import bulk_approve_reject

    result = bulk_approve_reject(
        tenant_id=1,
        cycle_id=cid,
        acting_user_id="u-1",
        decisions=[{"recommendation_id": rid, "decision": "APPROVED"}],
    )
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from compcycle.core.exceptions import ValidationError
from compcycle.models import db
from compcycle.models.audit import write_audit
from compcycle.models.auth import ROLE_ADMIN, ROLE_HR_MANAGER, ROLE_MANAGER
from compcycle.models.cycle import (
    DECIDABLE_STATUSES,
    REC_APPROVED,
    REC_ESCALATED,
    REC_REJECTED,
    REC_SUBMITTED,
    CompCycle,
    CompRecommendation,
)
from compcycle.models.employee import Employee
from compcycle.services.helpers.scoped_queries import get_scoped
from compcycle.services.notification import NotificationService
from compcycle.services.scheduler_service import SchedulerService
from compcycle.utils.helpers import chunked, paginate_query, utcnow

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_CHAIN = [ROLE_MANAGER, ROLE_HR_MANAGER, ROLE_ADMIN]

ESCALATION_REASON = "Auto-escalation: not actioned within deadline"
NUDGE_TITLE = "Approval Reminder"

_DECISION_VERBS = {REC_APPROVED: "approve", REC_REJECTED: "reject"}


def _batch_size() -> int:
    return int(current_app.config.get("BULK_BATCH_SIZE", 500))


def _audit(**kwargs) -> None:
    try:
        write_audit(**kwargs)
    except Exception:
        logger.warning("Audit log failed for %s, main flow unaffected", kwargs.get("action"), exc_info=True)


# ── Approval chain ───────────────────────────────────────────────────────────


def get_approval_chain(tenant_id: int, cycle_id: str) -> list[str]:
    """Configured approver roles in order. Advisory only, not enforced."""
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    chain = cycle.settings_bag.approval_chain
    if isinstance(chain, list) and chain:
        return list(chain)
    return list(DEFAULT_APPROVAL_CHAIN)


# ── Bulk decisions ───────────────────────────────────────────────────────────


def _normalise_decisions(decisions: list[dict]) -> list[dict]:
    if not isinstance(decisions, list) or not decisions:
        raise ValidationError("decisions must be a non-empty list")
    out = []
    for index, item in enumerate(decisions):
        if not isinstance(item, dict) or not item.get("recommendation_id"):
            raise ValidationError("recommendation_id is required", details={"index": index})
        decision = (item.get("decision") or "").upper()
        if decision not in _DECISION_VERBS:
            raise ValidationError("decision must be APPROVED or REJECTED", details={"index": index})
        out.append({
            "recommendation_id": str(item["recommendation_id"]),
            "decision": decision,
            "comment": item.get("comment"),
            "override_justification": item.get("override_justification"),
        })
    return out


def bulk_approve_reject(
    tenant_id: int,
    cycle_id: str,
    acting_user_id: str | None,
    decisions: list[dict],
) -> dict:
    """
    Apply approve / reject decisions in batches, one transaction per batch.

    Per-item problems are collected, never raised:
      - "Recommendation not found"
      - "Cannot approve recommendation in DRAFT status"
      - "Recommendation is locked for calibration"
      - "Recommendation was modified concurrently"

    Returns:
        {"cycle_id", "approved", "rejected", "errors": [...], "total"}
    """
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    items = _normalise_decisions(decisions)

    approved = rejected = 0
    errors: list[dict] = []

    for batch in chunked(items, _batch_size()):
        recs = {
            r.id: r
            for r in db.session.execute(
                select(CompRecommendation).where(
                    CompRecommendation.cycle_id == cycle.id,
                    CompRecommendation.id.in_([i["recommendation_id"] for i in batch]),
                )
            ).scalars()
        }
        batch_approved = batch_rejected = 0
        batch_errors: list[dict] = []
        now = utcnow()

        try:
            for item in batch:
                rec_id = item["recommendation_id"]
                decision = item["decision"]
                rec = recs.get(rec_id)
                if rec is None:
                    batch_errors.append({"recommendation_id": rec_id, "error": "Recommendation not found"})
                    continue
                if rec.status not in DECIDABLE_STATUSES:
                    batch_errors.append({
                        "recommendation_id": rec_id,
                        "error": f"Cannot {_DECISION_VERBS[decision]} recommendation in {rec.status} status",
                    })
                    continue
                if rec.locked:
                    batch_errors.append({
                        "recommendation_id": rec_id,
                        "error": "Recommendation is locked for calibration",
                    })
                    continue

                previous_status = rec.status
                values = {"status": decision, "updated_at": now}
                if decision == REC_APPROVED:
                    values.update(approver_user_id=acting_user_id, approved_at=now)

                result = db.session.execute(
                    update(CompRecommendation)
                    .where(
                        CompRecommendation.id == rec_id,
                        CompRecommendation.status == previous_status,
                        CompRecommendation.locked.is_(False),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    batch_errors.append({
                        "recommendation_id": rec_id,
                        "error": "Recommendation was modified concurrently",
                    })
                    continue

                if decision == REC_APPROVED:
                    batch_approved += 1
                else:
                    batch_rejected += 1
                _audit(
                    tenant_id=tenant_id,
                    user_id=acting_user_id,
                    action=f"RECOMMENDATION_{decision}",
                    entity_type="comp_recommendation",
                    entity_id=rec_id,
                    changes={
                        "previous_status": previous_status,
                        "new_status": decision,
                        "comment": item["comment"],
                        "override_justification": item["override_justification"],
                    },
                )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("Approval batch failed", extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
            errors.extend(
                {"recommendation_id": i["recommendation_id"], "error": f"Batch failed: {exc.__class__.__name__}"}
                for i in batch
            )
            continue

        approved += batch_approved
        rejected += batch_rejected
        errors.extend(batch_errors)

    logger.info(
        "Bulk decisions: approved=%d rejected=%d errors=%d", approved, rejected, len(errors),
        extra={"tenant_id": tenant_id, "cycle_id": cycle.id, "user_id": acting_user_id},
    )
    return {
        "cycle_id": cycle.id,
        "approved": approved,
        "rejected": rejected,
        "errors": errors,
        "total": len(items),
    }


def get_pending_approvals(
    tenant_id: int,
    cycle_id: str,
    *,
    page: int = 1,
    limit: int = 50,
    department: str | None = None,
    status: str | None = None,
) -> dict:
    """SUBMITTED / ESCALATED recommendations awaiting a decision, paginated."""
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)

    statuses = list(DECIDABLE_STATUSES)
    if status:
        status = status.upper()
        if status not in DECIDABLE_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(DECIDABLE_STATUSES)}")
        statuses = [status]

    q = (
        CompRecommendation.query
        .join(Employee, Employee.id == CompRecommendation.employee_id)
        .filter(CompRecommendation.cycle_id == cycle.id,
                CompRecommendation.status.in_(statuses))
    )
    if department:
        q = q.filter(Employee.department == department)
    q = q.order_by(CompRecommendation.created_at.asc(), CompRecommendation.id.asc())

    page_data = paginate_query(q, page, limit)
    page_data["items"] = [r.to_dict(include_employee=True) for r in page_data["items"]]
    return page_data


# ── Escalation ───────────────────────────────────────────────────────────────


def schedule_escalation(tenant_id: int, cycle_id: str, acting_user_id: str | None = None) -> dict:
    """
    Queue a delayed escalation for every SUBMITTED recommendation.

    Delay comes from ``settings.escalationDelayMs`` or the configured default.

    Returns:
        {"scheduled": n, "delay_ms": int, "job_id": int}; no job when n == 0.
    """
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    delay_ms = cycle.settings_bag.escalation_delay_ms or int(
        current_app.config.get("DEFAULT_ESCALATION_DELAY_MS", 3 * 24 * 60 * 60 * 1000)
    )

    rec_ids = list(db.session.execute(
        select(CompRecommendation.id)
        .where(CompRecommendation.cycle_id == cycle.id,
               CompRecommendation.status == REC_SUBMITTED)
        .order_by(CompRecommendation.created_at.asc(), CompRecommendation.id.asc())
    ).scalars())
    if not rec_ids:
        return {"scheduled": 0, "delay_ms": delay_ms}

    job = SchedulerService.enqueue(
        "escalate-approvals",
        {
            "tenant_id": tenant_id,
            "cycle_id": cycle.id,
            "recommendation_ids": rec_ids,
            "triggered_by": acting_user_id,
        },
        delay_ms=delay_ms,
        commit=False,
    )
    _audit(
        tenant_id=tenant_id,
        user_id=acting_user_id,
        action="ESCALATION_SCHEDULED",
        entity_type="comp_cycle",
        entity_id=cycle.id,
        changes={"recommendation_count": len(rec_ids), "delay_ms": delay_ms, "job_id": job.id},
    )
    db.session.commit()

    logger.info("Escalation scheduled for %d recommendation(s) in %dms", len(rec_ids), delay_ms,
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id, "job_id": job.id})
    return {"scheduled": len(rec_ids), "delay_ms": delay_ms, "job_id": job.id}


def execute_escalation(
    tenant_id: int,
    cycle_id: str,
    recommendation_ids: list[str],
    triggered_by: str | None = None,
) -> dict:
    """
    Flip SUBMITTED → ESCALATED for the given ids.

    Rows already decided, escalated or locked since scheduling are skipped
    silently.

    Returns:
        {"escalated": n}
    """
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    escalated = 0

    for batch in chunked(list(recommendation_ids or []), _batch_size()):
        now = utcnow()
        for rec_id in batch:
            result = db.session.execute(
                update(CompRecommendation)
                .where(
                    CompRecommendation.id == rec_id,
                    CompRecommendation.cycle_id == cycle.id,
                    CompRecommendation.status == REC_SUBMITTED,
                    CompRecommendation.locked.is_(False),
                )
                .values(status=REC_ESCALATED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            escalated += 1
            _audit(
                tenant_id=tenant_id,
                user_id=triggered_by,
                action="RECOMMENDATION_ESCALATED",
                entity_type="comp_recommendation",
                entity_id=rec_id,
                changes={
                    "previous_status": REC_SUBMITTED,
                    "new_status": REC_ESCALATED,
                    "reason": ESCALATION_REASON,
                },
            )
        db.session.commit()

    logger.info("Escalated %d of %d recommendation(s)", escalated, len(recommendation_ids or []),
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return {"escalated": escalated}


# ── Nudges ───────────────────────────────────────────────────────────────────


def send_nudge(
    tenant_id: int,
    cycle_id: str,
    acting_user_id: str | None = None,
    target_user_ids: list[str] | None = None,
    message: str | None = None,
) -> dict:
    """
    Remind approvers about pending recommendations.

    Without explicit targets, every distinct approver on a SUBMITTED or
    ESCALATED recommendation is nudged.

    Returns:
        {"nudged": n, "target_user_ids": [...]}
    """
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)

    if target_user_ids:
        targets = list(dict.fromkeys(str(u) for u in target_user_ids))
    else:
        targets = list(db.session.execute(
            select(CompRecommendation.approver_user_id)
            .where(CompRecommendation.cycle_id == cycle.id,
                   CompRecommendation.status.in_(DECIDABLE_STATUSES),
                   CompRecommendation.approver_user_id.isnot(None))
            .distinct()
            .order_by(CompRecommendation.approver_user_id)
        ).scalars())

    if not targets:
        return {"nudged": 0, "target_user_ids": []}

    body = message or (
        f'You have pending approvals for cycle "{cycle.name}". Please review and take action.'
    )
    NotificationService.bulk_create(
        tenant_id=tenant_id,
        user_ids=targets,
        type="APPROVAL_NUDGE",
        title=NUDGE_TITLE,
        body=body,
        metadata={"cycle_id": cycle.id, "sent_by": acting_user_id},
        entity_type="comp_cycle",
        entity_id=cycle.id,
    )
    _audit(
        tenant_id=tenant_id,
        user_id=acting_user_id,
        action="NUDGE_SENT",
        entity_type="comp_cycle",
        entity_id=cycle.id,
        changes={"target_user_ids": targets, "count": len(targets)},
    )
    db.session.commit()

    logger.info("Nudged %d approver(s)", len(targets),
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return {"nudged": len(targets), "target_user_ids": targets}
