"""
Executive Summary Generator

Rolls the three detectors and the cycle's progress into one report with
blockers and action items, and renders it as Markdown for email / export.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select

from compcycle.models import db
from compcycle.models.cycle import REC_APPROVED, REC_DRAFT, REC_SUBMITTED, CompCycle, CompRecommendation
from compcycle.services.helpers.scoped_queries import get_scoped
from compcycle.services.monitors import budget_drift, outlier_detector, policy_violation
from compcycle.services.monitors.alerts import persist_alerts
from compcycle.services.monitors.types import (
    TOP_N,
    AlertType,
    BudgetDriftResult,
    CycleProgress,
    ExecSummary,
    MonitorAlert,
    OutlierResult,
    PolicyViolationResult,
    Severity,
)
from compcycle.services.rules_engine import RuleEvaluator
from compcycle.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

_DAY_SECONDS = 86400
# Blocker thresholds
CRITICAL_DRIFT_PCT = 10
DEADLINE_WARNING_DAYS = 7
DEADLINE_MIN_COMPLETION_PCT = 50
ON_TRACK = "No immediate action items, cycle is on track"


def _progress(cycle: CompCycle, now: datetime) -> CycleProgress:
    by_status = dict(db.session.execute(
        select(CompRecommendation.status, func.count(CompRecommendation.id))
        .where(CompRecommendation.cycle_id == cycle.id)
        .group_by(CompRecommendation.status)
    ).all())
    total = sum(by_status.values())
    approved = by_status.get(REC_APPROVED, 0)

    start = as_utc(cycle.start_date)
    end = as_utc(cycle.end_date)
    return CycleProgress(
        status=cycle.status,
        total_recommendations=total,
        by_status=by_status,
        completion_pct=round(approved / total * 100, 2) if total else 0.0,
        days_elapsed=max(0, round((now - start).total_seconds() / _DAY_SECONDS)),
        days_remaining=max(0, round((end - now).total_seconds() / _DAY_SECONDS)),
    )


def _blockers(drift: BudgetDriftResult, violations: PolicyViolationResult,
              progress: CycleProgress) -> list[str]:
    blockers = []
    if drift.exceeded and abs(drift.overall_drift_pct) > CRITICAL_DRIFT_PCT:
        blockers.append(
            f"Budget drift is {drift.overall_drift_pct}%, exceeding the critical threshold"
        )
    critical = violations.by_severity.get(Severity.CRITICAL.value, 0)
    if critical:
        blockers.append(f"{critical} critical policy violation(s) require immediate attention")
    if (progress.days_remaining <= DEADLINE_WARNING_DAYS
            and progress.completion_pct < DEADLINE_MIN_COMPLETION_PCT):
        blockers.append(
            f"Only {progress.days_remaining} days remaining with "
            f"{progress.completion_pct}% completion"
        )
    return blockers


def _action_items(drift: BudgetDriftResult, violations: PolicyViolationResult,
                  outliers: OutlierResult, progress: CycleProgress) -> list[str]:
    items = []
    if drift.exceeded:
        departments = [d.department for d in drift.department_drifts if d.exceeded]
        items.append(f"Review budget drift in: {', '.join(departments)}")
    if violations.total_violations:
        items.append(f"Resolve {violations.total_violations} policy violation(s)")
    critical = violations.by_severity.get(Severity.CRITICAL.value, 0)
    if critical:
        items.append(f"Escalate {critical} critical violation(s) to HR leadership")
    if outliers.total_outliers:
        items.append(f"Review {outliers.total_outliers} compensation outlier(s)")
    pending = progress.by_status.get(REC_DRAFT, 0) + progress.by_status.get(REC_SUBMITTED, 0)
    if pending:
        items.append(f"Process {pending} pending recommendation(s)")
    return items or [ON_TRACK]


def generate(
    tenant_id: int,
    cycle_id: str,
    *,
    now: datetime | None = None,
    evaluator: RuleEvaluator | None = None,
) -> ExecSummary:
    """Run every detector against the cycle and assemble the summary."""
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    now = as_utc(now) or utcnow()

    drift = budget_drift.detect(tenant_id, cycle.id, now=now)
    violations = policy_violation.detect(tenant_id, cycle.id, evaluator=evaluator)
    outliers = outlier_detector.detect(tenant_id, cycle.id)
    progress = _progress(cycle, now)

    summary = ExecSummary(
        cycle_id=cycle.id,
        cycle_name=cycle.name,
        generated_at=now.isoformat(),
        budget_status=drift,
        top_violations=violations.violations[:TOP_N],
        outlier_list=outliers.outliers[:TOP_N],
        cycle_progress=progress,
        blockers=_blockers(drift, violations, progress),
        action_items=_action_items(drift, violations, outliers, progress),
        total_violations=violations.total_violations,
        total_outliers=outliers.total_outliers,
    )
    logger.info("Executive summary generated (%d blocker(s))", len(summary.blockers),
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return summary


def create_alert(tenant_id: int, summary: ExecSummary, *, commit: bool = True) -> list[MonitorAlert]:
    alert = MonitorAlert(
        cycle_id=summary.cycle_id,
        alert_type=AlertType.EXEC_SUMMARY.value,
        severity=(Severity.HIGH if summary.blockers else Severity.INFO).value,
        title=f"Executive Summary: {summary.cycle_name}",
        details={
            "generatedAt": summary.generated_at,
            "budgetDriftPct": summary.budget_status.overall_drift_pct,
            "totalViolations": summary.total_violations,
            "totalOutliers": summary.total_outliers,
            "completionPct": summary.cycle_progress.completion_pct,
            "blockerCount": len(summary.blockers),
            "actionItemCount": len(summary.action_items),
        },
    )
    persist_alerts(tenant_id, summary.cycle_id, [alert])
    if commit:
        db.session.commit()
    return [alert]


def to_markdown(summary: ExecSummary) -> str:
    """Render the summary as Markdown."""
    budget = summary.budget_status
    progress = summary.cycle_progress
    lines = [
        f"# Executive Summary: {summary.cycle_name}",
        f"*Generated: {summary.generated_at}*",
        "",
        "## Budget Status",
        f"- Overall drift: **{budget.overall_drift_pct}%**",
        f"- Threshold: {budget.threshold_pct}%",
        f"- Status: {'EXCEEDED' if budget.exceeded else 'Within limits'}",
        f"- Projected total: ${budget.projection.projected_total:,.2f}",
        f"- Days remaining: {budget.projection.days_remaining}",
        "",
        "## Cycle Progress",
        f"- Status: **{progress.status}**",
        f"- Completion: {progress.completion_pct}%",
        f"- Total recommendations: {progress.total_recommendations}",
        f"- Days elapsed: {progress.days_elapsed}",
        f"- Days remaining: {progress.days_remaining}",
        "",
    ]

    if summary.top_violations:
        lines.append("## Top Policy Violations")
        lines.extend(f"- **{v.employee_name}** ({v.department}): {v.details}"
                     for v in summary.top_violations)
        lines.append("")

    if summary.outlier_list:
        lines.append("## Outliers")
        lines.extend(f"- **{o.employee_name}** ({o.department}/{o.level}): {o.details}"
                     for o in summary.outlier_list)
        lines.append("")

    if summary.blockers:
        lines.append("## Blockers")
        lines.extend(f"- {b}" for b in summary.blockers)
        lines.append("")

    lines.append("## Action Items")
    lines.extend(f"- [ ] {a}" for a in summary.action_items)
    return "\n".join(lines)
