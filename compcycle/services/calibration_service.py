"""
Calibration Lock Manager

Group review sessions over a snapshot of recommendations. While a session
holds them, recommendations carry ``locked = True`` and refuse approval,
escalation and manual status changes. The lock is orthogonal to status.

Rules:
  - Outcomes are only writable while the session is ACTIVE.
  - Completing (or cancelling) a session releases every participant back to
    SUBMITTED.
  - An outcome's ``adjusted_value`` becomes the recommendation's proposed value.
"""

from __future__ import annotations

import logging

from sqlalchemy import select, update

from compcycle.core.exceptions import InvalidStateError, ValidationError
from compcycle.models import db
from compcycle.models.audit import write_audit
from compcycle.models.cycle import (
    LOCKABLE_STATUSES,
    REC_SUBMITTED,
    SESSION_ACTIVE,
    SESSION_METADATA_KEY,
    SESSION_STATUSES,
    CalibrationSession,
    CompCycle,
    CompRecommendation,
)
from compcycle.models.employee import Employee
from compcycle.services.budget_ledger import recalculate_budget_spent
from compcycle.services.helpers.scoped_queries import get_scoped
from compcycle.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# Session statuses that release the lock on every participant
_RELEASING_STATUSES = {"COMPLETED", "CANCELLED"}


def _audit(**kwargs) -> None:
    try:
        write_audit(**kwargs)
    except Exception:
        logger.warning("Audit log failed for %s, main flow unaffected", kwargs.get("action"), exc_info=True)


def _snapshot(rec: CompRecommendation) -> dict:
    return {
        "recommendation_id": rec.id,
        "employee_id": rec.employee_id,
        "rec_type": rec.rec_type,
        "current_value": rec.current_value,
        "proposed_value": rec.proposed_value,
        "original_status": rec.status,
    }


def _load_session(tenant_id: int, cycle_id: str, session_id: str) -> CalibrationSession:
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    return get_scoped(CalibrationSession, session_id, cycle_id=cycle.id)


# ── Sessions ─────────────────────────────────────────────────────────────────


def create_session(
    tenant_id: int,
    cycle_id: str,
    acting_user_id: str | None,
    name: str,
    recommendation_ids: list[str] | None = None,
    department: str | None = None,
    level: str | None = None,
) -> dict:
    """
    Open a calibration session over an explicit id list or an employee filter.

    Raises:
        ValidationError: name missing.
        InvalidStateError: no recommendation matched.
    """
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")

    stmt = select(CompRecommendation).where(CompRecommendation.cycle_id == cycle.id)
    if recommendation_ids:
        stmt = stmt.where(CompRecommendation.id.in_([str(r) for r in recommendation_ids]))
    else:
        stmt = stmt.join(Employee, Employee.id == CompRecommendation.employee_id)
        if department:
            stmt = stmt.where(Employee.department == department)
        if level:
            stmt = stmt.where(Employee.level == level)
    stmt = stmt.order_by(CompRecommendation.created_at.asc(), CompRecommendation.id.asc())

    recs = db.session.execute(stmt).scalars().all()
    if not recs:
        raise InvalidStateError("No recommendations found matching the criteria")

    session = CalibrationSession(
        cycle_id=cycle.id,
        name=name,
        status=SESSION_ACTIVE,
        participants=[_snapshot(r) for r in recs],
        outcomes={},
        created_by=acting_user_id,
    )
    db.session.add(session)
    db.session.flush()

    _audit(
        tenant_id=tenant_id,
        user_id=acting_user_id,
        action="CALIBRATION_SESSION_CREATED",
        entity_type="calibration_session",
        entity_id=session.id,
        changes={"name": name, "participant_count": len(recs),
                 "filter": {"department": department, "level": level}},
    )
    db.session.commit()
    logger.info("Calibration session %s created with %d participant(s)", session.id, len(recs),
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return session.to_dict()


def list_sessions(tenant_id: int, cycle_id: str) -> list[dict]:
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    sessions = (
        cycle.calibration_sessions
        .order_by(CalibrationSession.created_at.desc(), CalibrationSession.id.asc())
        .all()
    )
    return [s.to_dict() for s in sessions]


def get_session(tenant_id: int, cycle_id: str, session_id: str) -> dict:
    return _load_session(tenant_id, cycle_id, session_id).to_dict()


# ── Locking ──────────────────────────────────────────────────────────────────


def _lock(session: CalibrationSession) -> int:
    ids = session.participant_ids
    if not ids:
        return 0
    result = db.session.execute(
        update(CompRecommendation)
        .where(
            CompRecommendation.cycle_id == session.cycle_id,
            CompRecommendation.id.in_(ids),
            CompRecommendation.status.in_(LOCKABLE_STATUSES),
            CompRecommendation.locked.is_(False),
        )
        .values(locked=True, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _unlock(session: CalibrationSession) -> int:
    ids = session.participant_ids
    if not ids:
        return 0
    result = db.session.execute(
        update(CompRecommendation)
        .where(
            CompRecommendation.cycle_id == session.cycle_id,
            CompRecommendation.id.in_(ids),
            CompRecommendation.locked.is_(True),
        )
        .values(locked=False, status=REC_SUBMITTED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def lock_recommendations(
    tenant_id: int, cycle_id: str, session_id: str, acting_user_id: str | None = None,
) -> int:
    """Lock DRAFT / SUBMITTED participants not already locked. Returns the count."""
    session = _load_session(tenant_id, cycle_id, session_id)
    if not session.is_open:
        raise InvalidStateError(
            f"Cannot lock recommendations for a {session.status.lower()} calibration session"
        )

    count = _lock(session)
    _audit(
        tenant_id=tenant_id,
        user_id=acting_user_id,
        action="CALIBRATION_RECOMMENDATIONS_LOCKED",
        entity_type="calibration_session",
        entity_id=session.id,
        changes={"locked": count},
    )
    db.session.commit()
    logger.info("Locked %d recommendation(s) for session %s", count, session.id,
                extra={"tenant_id": tenant_id, "cycle_id": session.cycle_id})
    return count


def unlock_recommendations(
    tenant_id: int, cycle_id: str, session_id: str, acting_user_id: str | None = None,
) -> int:
    """Release locked participants back to SUBMITTED. Returns the count."""
    session = _load_session(tenant_id, cycle_id, session_id)
    count = _unlock(session)
    _audit(
        tenant_id=tenant_id,
        user_id=acting_user_id,
        action="CALIBRATION_RECOMMENDATIONS_UNLOCKED",
        entity_type="calibration_session",
        entity_id=session.id,
        changes={"unlocked": count},
    )
    db.session.commit()
    logger.info("Unlocked %d recommendation(s) for session %s", count, session.id,
                extra={"tenant_id": tenant_id, "cycle_id": session.cycle_id})
    return count


# ── Outcomes ─────────────────────────────────────────────────────────────────


def update_session(
    tenant_id: int,
    cycle_id: str,
    session_id: str,
    acting_user_id: str | None = None,
    *,
    outcomes: dict | None = None,
    status: str | None = None,
    metadata: dict | None = None,
    name: str | None = None,
) -> dict:
    """
    Record calibration outcomes and / or close the session, in one transaction.

    ``outcomes`` maps recommendation id → {adjusted_value, rank, notes}.

    Raises:
        InvalidStateError: session no longer ACTIVE.
        ValidationError: unknown status or non-participant recommendation ids.
    """
    session = _load_session(tenant_id, cycle_id, session_id)
    if not session.is_open:
        raise InvalidStateError(f"Cannot update a {session.status.lower()} calibration session")

    if status is not None:
        status = status.upper()
        if status not in SESSION_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(sorted(SESSION_STATUSES))}")
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")

    merged = dict(session.outcomes or {})
    adjusted = 0

    if outcomes:
        if not isinstance(outcomes, dict):
            raise ValidationError("outcomes must be an object keyed by recommendation id")
        participants = set(session.participant_ids)
        strangers = sorted(k for k in outcomes if k not in participants)
        if strangers:
            raise ValidationError(
                "Outcomes reference recommendations outside this session",
                details={"recommendation_ids": strangers},
            )

        # Convert and load everything before the first write
        targets = {}
        for rec_id, outcome in outcomes.items():
            if outcome is not None and not isinstance(outcome, dict):
                raise ValidationError("Each outcome must be an object", details={"recommendation_id": rec_id})
            adjusted_value = (outcome or {}).get("adjusted_value")
            if adjusted_value is None:
                continue
            try:
                value = float(adjusted_value)
            except (TypeError, ValueError):
                raise ValidationError(
                    "adjusted_value must be a number", details={"recommendation_id": rec_id},
                ) from None
            targets[rec_id] = (get_scoped(CompRecommendation, rec_id, cycle_id=session.cycle_id), value)

        recorded_at = utcnow().isoformat()
        for rec_id, outcome in outcomes.items():
            outcome = outcome or {}
            adjusted_value = outcome.get("adjusted_value")
            previous = merged.get(rec_id, {})
            merged[rec_id] = {
                **previous,
                "adjusted_value": adjusted_value if adjusted_value is not None
                else previous.get("adjusted_value"),
                "rank": outcome.get("rank", previous.get("rank")),
                "notes": outcome.get("notes", previous.get("notes")),
                "recorded_at": recorded_at,
                "recorded_by": acting_user_id,
            }
        for rec, value in targets.values():
            rec.proposed_value = value
        adjusted = len(targets)

    if metadata:
        merged[SESSION_METADATA_KEY] = {**merged.get(SESSION_METADATA_KEY, {}), **metadata}

    session.outcomes = merged
    if name:
        session.name = name

    released = 0
    if status is not None and status != session.status:
        session.status = status
        if status in _RELEASING_STATUSES:
            db.session.flush()
            released = _unlock(session)

    if adjusted:
        db.session.flush()
        recalculate_budget_spent(session.cycle_id, commit=False)

    _audit(
        tenant_id=tenant_id,
        user_id=acting_user_id,
        action="CALIBRATION_SESSION_UPDATED",
        entity_type="calibration_session",
        entity_id=session.id,
        changes={
            "outcomes": sorted(k for k in (outcomes or {})),
            "status": session.status,
            "released": released,
        },
    )
    db.session.commit()
    logger.info("Calibration session %s updated (status=%s, adjusted=%d, released=%d)",
                session.id, session.status, adjusted, released,
                extra={"tenant_id": tenant_id, "cycle_id": session.cycle_id})
    return session.to_dict()
