"""
Policy Violation Detector

Runs every recommendation's employee through each ACTIVE rule set and turns
blocks, cap / floor breaches and flags into violations. Department budget
overruns are checked independently of any rule set.

The evaluator defaults to ``app.extensions["rule_evaluator"]`` and falls back
to the built-in rules engine. An evaluator that raises costs only that
recommendation and rule set pair; the failure is logged and counted.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import select

from compcycle.models import db
from compcycle.models.cycle import CompCycle, CompRecommendation, CycleBudget
from compcycle.models.rules import RuleSet
from compcycle.services.helpers.scoped_queries import get_scoped
from compcycle.services.monitors.alerts import persist_alerts
from compcycle.services.monitors.types import (
    TOP_N,
    AlertType,
    MonitorAlert,
    PolicyViolation,
    PolicyViolationResult,
    Severity,
)
from compcycle.services.rules_engine import RuleEvaluator, evaluate_rules

logger = logging.getLogger(__name__)

BUDGET_RULE_NAME = "Department Budget"
BUDGET_RULE_ID = "budget-check"


def _resolve_evaluator(evaluator: RuleEvaluator | None) -> RuleEvaluator:
    if evaluator is not None:
        return evaluator
    return current_app.extensions.get("rule_evaluator") or evaluate_rules


def _active_rule_sets(tenant_id: int) -> list[dict]:
    rule_sets = (
        RuleSet.query_for_tenant(tenant_id)
        .filter_by(status="ACTIVE")
        .order_by(RuleSet.created_at.asc(), RuleSet.id.asc())
        .all()
    )
    return [
        {
            "id": rs.id,
            "name": rs.name,
            "rules": sorted((r.to_dict() for r in rs.enabled_rules()),
                            key=lambda r: r["priority"]),
        }
        for rs in rule_sets
    ]


def _department_budgets(cycle_id: str) -> dict[str, dict]:
    """Department -> {allocated, spent}.

    A department-wide row wins; departments budgeted only per manager sum
    their manager rows.
    """
    wide: dict[str, dict] = {}
    per_manager: dict[str, dict] = {}
    rows = db.session.execute(
        select(CycleBudget).where(CycleBudget.cycle_id == cycle_id)
    ).scalars()
    for b in rows:
        if b.manager_id is None:
            wide[b.department] = {"allocated": float(b.allocated or 0), "spent": float(b.spent or 0)}
        else:
            agg = per_manager.setdefault(b.department, {"allocated": 0.0, "spent": 0.0})
            agg["allocated"] += float(b.allocated or 0)
            agg["spent"] += float(b.spent or 0)
    return {**per_manager, **wide}


def _num(value: float) -> str:
    """Plain number text: 300000.0 -> 300000, 12.5 -> 12.5."""
    return f"{value:.15g}"


def _violation(rec: CompRecommendation, kind: str, rule_name: str, rule_id: str,
               details: str, severity: Severity) -> PolicyViolation:
    emp = rec.employee
    return PolicyViolation(
        recommendation_id=rec.id,
        employee_id=emp.id,
        employee_name=emp.full_name,
        department=emp.department,
        violation_type=kind,
        rule_name=rule_name,
        rule_id=rule_id,
        details=details,
        severity=severity.value,
    )


def _cap_floor_violations(rec: CompRecommendation, evaluation) -> list[PolicyViolation]:
    change = rec.change_amount
    base_salary = float(rec.employee.base_salary or 0)
    change_pct = change / base_salary * 100 if base_salary > 0 else 0.0

    found = []
    for decision in evaluation.decisions:
        for action in decision.actions:
            limit = action.calculated_value
            if action.type == "applyCap" and change > limit:
                found.append(_violation(
                    rec, "EXCEEDS_CAP", decision.rule_name, decision.rule_id,
                    f"Proposed change ({change_pct:.1f}%) exceeds cap ({_num(limit)})",
                    Severity.HIGH,
                ))
            if action.type == "applyFloor" and change < limit:
                found.append(_violation(
                    rec, "BELOW_FLOOR", decision.rule_name, decision.rule_id,
                    f"Proposed change ({change_pct:.1f}%) is below floor ({_num(limit)})",
                    Severity.MEDIUM,
                ))
    return found


def detect(
    tenant_id: int,
    cycle_id: str,
    evaluator: RuleEvaluator | None = None,
) -> PolicyViolationResult:
    """Collect policy violations across every recommendation in the cycle."""
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    evaluate = _resolve_evaluator(evaluator)
    rule_sets = _active_rule_sets(tenant_id)
    budgets = _department_budgets(cycle.id)

    recs = db.session.execute(
        select(CompRecommendation)
        .where(CompRecommendation.cycle_id == cycle.id)
        .order_by(CompRecommendation.created_at.asc(), CompRecommendation.id.asc())
    ).scalars().all()

    result = PolicyViolationResult(cycle_id=cycle.id)
    for rec in recs:
        emp = rec.employee
        snapshot = emp.to_snapshot()

        for rule_set in rule_sets:
            try:
                evaluation = evaluate(snapshot, rule_set)
            except Exception:
                result.evaluation_errors += 1
                logger.warning("Rule set %s failed for recommendation %s, skipped",
                               rule_set["id"], rec.id, exc_info=True,
                               extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
                continue
            if evaluation.blocked:
                result.violations.append(_violation(
                    rec, "BLOCKED_BY_RULE", rule_set["name"], rule_set["id"],
                    f"Employee blocked by rule set: {'; '.join(evaluation.warnings)}",
                    Severity.CRITICAL,
                ))
            result.violations.extend(_cap_floor_violations(rec, evaluation))
            for flag in evaluation.flags:
                result.violations.append(_violation(
                    rec, "UNAPPROVED_EXCEPTION", rule_set["name"], rule_set["id"],
                    flag, Severity.MEDIUM,
                ))

        budget = budgets.get(emp.department)
        if budget and budget["allocated"] > 0:
            if budget["spent"] + rec.change_amount > budget["allocated"]:
                result.violations.append(_violation(
                    rec, "EXCEEDS_BUDGET", BUDGET_RULE_NAME, BUDGET_RULE_ID,
                    f"Recommendation would exceed {emp.department} budget "
                    f"(allocated: {_num(budget['allocated'])}, current spent: {_num(budget['spent'])})",
                    Severity.HIGH,
                ))

    logger.info("Policy check found %d violation(s) across %d recommendation(s), %d evaluation error(s)",
                result.total_violations, len(recs), result.evaluation_errors,
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return result


def build_alerts(result: PolicyViolationResult) -> list[MonitorAlert]:
    if not result.total_violations:
        return []
    by_severity = result.by_severity
    return [MonitorAlert(
        cycle_id=result.cycle_id,
        alert_type=AlertType.POLICY_VIOLATION.value,
        severity=(Severity.CRITICAL if by_severity.get(Severity.CRITICAL.value)
                  else Severity.HIGH).value,
        title=f"{result.total_violations} policy violation(s) detected",
        details={
            "totalViolations": result.total_violations,
            "bySeverity": by_severity,
            "byType": result.by_type,
            "topViolations": [
                {"employee": v.employee_name, "type": v.violation_type, "details": v.details}
                for v in result.violations[:TOP_N]
            ],
        },
    )]


def create_alerts(
    tenant_id: int, cycle_id: str, result: PolicyViolationResult, *, commit: bool = True,
) -> list[MonitorAlert]:
    alerts = build_alerts(result)
    persist_alerts(tenant_id, cycle_id, alerts)
    if commit:
        db.session.commit()
    return alerts
