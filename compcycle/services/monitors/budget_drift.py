"""
Budget Drift Detector

Compares spend against the cycle budget (overall) and against each row's own
allocation (per department), and projects end-of-cycle spend from the burn
rate so far.
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import current_app

from compcycle.models import db
from compcycle.models.cycle import CompCycle
from compcycle.services.helpers.scoped_queries import get_scoped
from compcycle.services.monitors.alerts import persist_alerts
from compcycle.services.monitors.types import (
    AlertType,
    BudgetDriftResult,
    BudgetProjection,
    DepartmentDrift,
    MonitorAlert,
    Severity,
)
from compcycle.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

_DAY_SECONDS = 86400
# |drift| above this escalates the alert severity one step
CRITICAL_DRIFT_PCT = 10


def _drift(spent: float, base: float) -> float:
    return round((spent - base) / base * 100, 2) if base > 0 else 0.0


def _projection(cycle: CompCycle, total_spent: float, now: datetime) -> BudgetProjection:
    start = as_utc(cycle.start_date)
    end = as_utc(cycle.end_date)
    budget_total = float(cycle.budget_total or 0)

    total_days = max(1.0, (end - start).total_seconds() / _DAY_SECONDS)
    days_elapsed = max(1.0, (now - start).total_seconds() / _DAY_SECONDS)
    days_remaining = max(0.0, (end - now).total_seconds() / _DAY_SECONDS)

    daily_burn_rate = total_spent / days_elapsed
    projected_total = daily_burn_rate * total_days
    return BudgetProjection(
        projected_total=round(projected_total, 2),
        budget_total=budget_total,
        projected_overage=round(projected_total - budget_total, 2),
        days_remaining=round(days_remaining),
        daily_burn_rate=round(daily_burn_rate, 2),
    )


def detect(
    tenant_id: int,
    cycle_id: str,
    threshold_pct: float | None = None,
    *,
    now: datetime | None = None,
) -> BudgetDriftResult:
    """Measure overall and per-department drift for a cycle."""
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    if threshold_pct is None:
        threshold_pct = float(current_app.config.get("DRIFT_THRESHOLD_PCT", 5))
    now = as_utc(now) or utcnow()

    budget_total = float(cycle.budget_total or 0)
    total_spent = sum(float(b.spent or 0) for b in cycle.budgets)
    overall = _drift(total_spent, budget_total)

    departments = []
    for b in cycle.budgets:
        drift_pct = _drift(float(b.spent or 0), float(b.allocated or 0))
        departments.append(DepartmentDrift(
            department=b.department,
            manager_id=b.manager_id,
            allocated=float(b.allocated or 0),
            spent=float(b.spent or 0),
            remaining=float(b.remaining or 0),
            drift_pct=drift_pct,
            exceeded=abs(drift_pct) > threshold_pct,
        ))

    result = BudgetDriftResult(
        cycle_id=cycle.id,
        overall_drift_pct=overall,
        threshold_pct=threshold_pct,
        exceeded=abs(overall) > threshold_pct,
        department_drifts=departments,
        projection=_projection(cycle, total_spent, now),
    )
    logger.info("Budget drift %.2f%% (threshold %.2f%%)", overall, threshold_pct,
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return result


def build_alerts(result: BudgetDriftResult) -> list[MonitorAlert]:
    alerts = []
    if result.exceeded:
        alerts.append(MonitorAlert(
            cycle_id=result.cycle_id,
            alert_type=AlertType.BUDGET_DRIFT.value,
            severity=(Severity.CRITICAL if abs(result.overall_drift_pct) > CRITICAL_DRIFT_PCT
                      else Severity.HIGH).value,
            title=f"Overall budget drift: {result.overall_drift_pct}%",
            details={
                "overallDriftPct": result.overall_drift_pct,
                "thresholdPct": result.threshold_pct,
                "projection": result.projection.to_details(),
            },
        ))

    for dept in result.department_drifts:
        if not dept.exceeded:
            continue
        alerts.append(MonitorAlert(
            cycle_id=result.cycle_id,
            alert_type=AlertType.BUDGET_DRIFT.value,
            severity=(Severity.HIGH if abs(dept.drift_pct) > CRITICAL_DRIFT_PCT
                      else Severity.MEDIUM).value,
            title=f"{dept.department} budget drift: {dept.drift_pct}%",
            details={
                "department": dept.department,
                "managerId": dept.manager_id,
                "allocated": dept.allocated,
                "spent": dept.spent,
                "driftPct": dept.drift_pct,
            },
        ))
    return alerts


def create_alerts(
    tenant_id: int, cycle_id: str, result: BudgetDriftResult, *, commit: bool = True,
) -> list[MonitorAlert]:
    """Build drift alerts and persist them through the notification sink."""
    alerts = build_alerts(result)
    persist_alerts(tenant_id, cycle_id, alerts)
    if commit:
        db.session.commit()
    return alerts
