"""
Budget Ledger Service

Per-department allocation, spend, remaining and drift bookkeeping for a
compensation cycle.

Two entry points converge on ``upsert_budget``:
  - set_budgets:    top-down allocation by HR (list of departments)
  - request_budget: bottom-up request by a department manager

Both recalculation passes are full recomputations, so running them twice
gives the same ledger.

Rules:
  - tenant_id is always an explicit parameter (never from g).
  - remaining = allocated - spent after every write.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from compcycle.core.exceptions import ValidationError
from compcycle.models import db
from compcycle.models.audit import write_audit
from compcycle.models.cycle import CompCycle, CompRecommendation, CycleBudget
from compcycle.models.employee import Employee
from compcycle.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)


def _validate_budget_input(budget: dict) -> tuple[str, str | None, float]:
    if not isinstance(budget, dict):
        raise ValidationError("Each budget must be an object")
    department = (budget.get("department") or "").strip()
    if not department:
        raise ValidationError("department is required", details={"budget": budget})
    try:
        allocated = float(budget.get("allocated"))
    except (TypeError, ValueError):
        raise ValidationError(
            "allocated must be a number", details={"department": department},
        ) from None
    if allocated < 0:
        raise ValidationError("allocated must not be negative", details={"department": department})
    return department, budget.get("manager_id") or None, allocated


# ── Upsert ───────────────────────────────────────────────────────────────────


def upsert_budget(cycle: CompCycle, budget: dict) -> CycleBudget:
    """Create or replace the allocation keyed by (cycle, department, manager_id).

    Existing rows keep their ``spent``; new rows start with nothing spent.
    Flushes only; callers own the transaction.
    """
    department, manager_id, allocated = _validate_budget_input(budget)

    row = db.session.execute(
        select(CycleBudget).where(
            CycleBudget.cycle_id == cycle.id,
            CycleBudget.department == department,
            CycleBudget.manager_id.is_(None) if manager_id is None
            else CycleBudget.manager_id == manager_id,
        )
    ).scalar_one_or_none()

    if row is None:
        row = CycleBudget(
            cycle_id=cycle.id,
            department=department,
            manager_id=manager_id,
            allocated=allocated,
            spent=0.0,
            remaining=allocated,
            drift_pct=0.0,
        )
        db.session.add(row)
    else:
        row.allocated = allocated
        row.remaining = allocated - (row.spent or 0.0)
    db.session.flush()
    return row


def set_budgets(
    tenant_id: int,
    cycle_id: str,
    budgets: list[dict],
    acting_user_id: str | None = None,
) -> list[dict]:
    """Top-down allocation: upsert every department row, then rebalance.

    Returns:
        The cycle's full budget list after recalculation.
    """
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    if not isinstance(budgets, list) or not budgets:
        raise ValidationError("budgets must be a non-empty list")

    for budget in budgets:
        upsert_budget(cycle, budget)
    summary = recalculate_budget_remaining(cycle.id, commit=False)

    try:
        write_audit(
            tenant_id=tenant_id,
            user_id=acting_user_id,
            action="BUDGETS_SET",
            entity_type="comp_cycle",
            entity_id=cycle.id,
            changes={
                "departments": [b.get("department") for b in budgets],
                "total_allocated": summary["total_allocated"],
            },
        )
    except Exception:
        logger.warning("Audit log failed for budget allocation, main flow unaffected", exc_info=True)

    db.session.commit()
    logger.info(
        "Budgets set for %d department(s), total_allocated=%.2f drift=%.2f%%",
        len(budgets), summary["total_allocated"], summary["drift_pct"],
        extra={"tenant_id": tenant_id, "cycle_id": cycle.id},
    )
    return list_budgets(tenant_id, cycle.id)


def request_budget(
    tenant_id: int,
    cycle_id: str,
    budget: dict,
    acting_user_id: str | None = None,
) -> dict:
    """Bottom-up request from a single department / manager."""
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    row = upsert_budget(cycle, budget)
    recalculate_budget_remaining(cycle.id, commit=False)

    try:
        write_audit(
            tenant_id=tenant_id,
            user_id=acting_user_id,
            action="BUDGETS_SET",
            entity_type="comp_cycle",
            entity_id=cycle.id,
            changes={"requested": {"department": row.department, "allocated": row.allocated,
                                   "manager_id": row.manager_id}},
        )
    except Exception:
        logger.warning("Audit log failed for budget request, main flow unaffected", exc_info=True)

    db.session.commit()
    logger.info("Budget requested for %s: %.2f", row.department, row.allocated,
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return row.to_dict()


def list_budgets(tenant_id: int, cycle_id: str) -> list[dict]:
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    return [b.to_dict() for b in cycle.budgets]


# ── Recalculation passes ─────────────────────────────────────────────────────


def recalculate_budget_remaining(cycle_id: str, *, commit: bool = True) -> dict:
    """Recompute remaining per row and the cycle-wide allocation drift.

    ``drift_pct`` compares the sum of allocations with the cycle budget and
    is written identically on every row.

    Returns:
        {"total_allocated", "drift_pct"}
    """
    cycle = db.session.get(CompCycle, cycle_id)
    rows = db.session.execute(
        select(CycleBudget).where(CycleBudget.cycle_id == cycle_id)
    ).scalars().all()

    total_allocated = sum(float(r.allocated or 0) for r in rows)
    budget_total = float(cycle.budget_total or 0) if cycle else 0.0
    drift_pct = (
        round((total_allocated - budget_total) / budget_total * 100, 2)
        if budget_total > 0 else 0.0
    )

    for row in rows:
        row.remaining = float(row.allocated or 0) - float(row.spent or 0)
        row.drift_pct = drift_pct

    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return {"total_allocated": total_allocated, "drift_pct": drift_pct}


def recalculate_budget_spent(cycle_id: str, *, commit: bool = True) -> list[dict]:
    """Recompute spend per budget row from the cycle's recommendations.

    Spend is the net change (proposed - current) over recommendations whose
    employee sits in the row's department, floored at zero. A row keyed by
    ``manager_id`` is measured against its whole department too.
    """
    change = func.sum(CompRecommendation.proposed_value - CompRecommendation.current_value)
    base = (
        select(Employee.department, change)
        .join(Employee, Employee.id == CompRecommendation.employee_id)
        .where(CompRecommendation.cycle_id == cycle_id)
        .group_by(Employee.department)
    )
    by_department = {department: float(total or 0) for department, total in db.session.execute(base).all()}

    rows = db.session.execute(
        select(CycleBudget).where(CycleBudget.cycle_id == cycle_id)
    ).scalars().all()
    for row in rows:
        row.spent = max(0.0, by_department.get(row.department, 0.0))
        row.remaining = float(row.allocated or 0) - row.spent

    if commit:
        db.session.commit()
    else:
        db.session.flush()
    logger.debug("Recalculated spend for %d budget row(s)", len(rows), extra={"cycle_id": cycle_id})
    return [r.to_dict() for r in rows]
