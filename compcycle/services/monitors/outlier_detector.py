"""
Outlier Detector

Statistical and structural outliers among a cycle's recommendations:

  - STATISTICAL_OUTLIER: change % more than 2σ from its department:level
    cohort mean (population std dev, cohorts of 3 or more)
  - LARGE_YOY_CHANGE:    change above +25% or below -5%
  - INVERSION_RISK:      a junior row proposed above the next senior row
  - COMPRESSION_RISK:    less than 5% between adjacent levels

Inversion and compression compare neighbours after a stable sort by level
within each department, and are recorded against the senior row.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict

from sqlalchemy import select

from compcycle.models import db
from compcycle.models.cycle import CompCycle, CompRecommendation
from compcycle.services.helpers.scoped_queries import get_scoped
from compcycle.services.monitors.alerts import persist_alerts
from compcycle.services.monitors.types import (
    TOP_N,
    AlertType,
    MonitorAlert,
    OutlierRecord,
    OutlierResult,
    Severity,
)

logger = logging.getLogger(__name__)

Z_SCORE_THRESHOLD = 2
Z_SCORE_CRITICAL = 3
MIN_COHORT_SIZE = 3
LARGE_INCREASE_PCT = 25
LARGE_DECREASE_PCT = -5
COMPRESSION_GAP_PCT = 5


def change_pct(rec: CompRecommendation) -> float:
    current = float(rec.current_value or 0)
    if current <= 0:
        return 0.0
    return (float(rec.proposed_value or 0) - current) / current * 100


def population_stats(values: list[float]) -> tuple[float, float]:
    """Mean and population standard deviation; (0, 0) for no values."""
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def _record(rec: CompRecommendation, kind: str, value: float, details: str, severity: Severity,
            *, mean: float = 0.0, std_dev: float = 0.0, z_score: float = 0.0) -> OutlierRecord:
    emp = rec.employee
    return OutlierRecord(
        recommendation_id=rec.id,
        employee_id=emp.id,
        employee_name=emp.full_name,
        department=emp.department,
        level=emp.level,
        outlier_type=kind,
        value=value,
        cohort_mean=round(mean, 2),
        cohort_std_dev=round(std_dev, 2),
        z_score=round(z_score, 2),
        details=details,
        severity=severity.value,
    )


# ── Cohort statistics ────────────────────────────────────────────────────────


def _cohort_outliers(recs: list[CompRecommendation]) -> list[OutlierRecord]:
    cohorts: dict[str, list[CompRecommendation]] = defaultdict(list)
    for rec in recs:
        cohorts[f"{rec.employee.department}:{rec.employee.level}"].append(rec)

    found = []
    for key, members in cohorts.items():
        pcts = [change_pct(r) for r in members]
        mean, std_dev = population_stats(pcts)

        for rec, pct in zip(members, pcts):
            z = (pct - mean) / std_dev if std_dev > 0 else 0.0
            stats = {"mean": mean, "std_dev": std_dev, "z_score": z}

            if abs(z) > Z_SCORE_THRESHOLD and len(members) >= MIN_COHORT_SIZE:
                found.append(_record(
                    rec, "STATISTICAL_OUTLIER", pct,
                    f"Change of {pct:.1f}% is {abs(z):.1f}σ from cohort mean ({mean:.1f}%) in {key}",
                    Severity.CRITICAL if abs(z) > Z_SCORE_CRITICAL else Severity.HIGH,
                    **stats,
                ))

            if pct > LARGE_INCREASE_PCT or pct < LARGE_DECREASE_PCT:
                found.append(_record(
                    rec, "LARGE_YOY_CHANGE", pct,
                    f"Change of {pct:.1f}% is unusually {'large' if pct > 0 else 'negative'}",
                    Severity.CRITICAL if pct < LARGE_DECREASE_PCT else Severity.HIGH,
                    **stats,
                ))
    return found


# ── Level structure ──────────────────────────────────────────────────────────


def _structure_outliers(recs: list[CompRecommendation]) -> list[OutlierRecord]:
    by_department: dict[str, list[CompRecommendation]] = defaultdict(list)
    for rec in recs:
        by_department[rec.employee.department].append(rec)

    found = []
    for members in by_department.values():
        ordered = sorted(members, key=lambda r: r.employee.level or "")
        for junior, senior in zip(ordered, ordered[1:]):
            junior_value = float(junior.proposed_value or 0)
            senior_value = float(senior.proposed_value or 0)

            if junior_value > senior_value > 0:
                gap = (junior_value - senior_value) / senior_value * 100
                found.append(_record(
                    senior, "INVERSION_RISK", gap,
                    f"{junior.employee.level} ({junior.employee.full_name}) would earn "
                    f"{gap:.1f}% more than {senior.employee.level}",
                    Severity.HIGH,
                ))

            if senior_value > 0 and junior_value > 0:
                gap = (senior_value - junior_value) / senior_value * 100
                if 0 <= gap < COMPRESSION_GAP_PCT:
                    found.append(_record(
                        senior, "COMPRESSION_RISK", gap,
                        f"Only {gap:.1f}% gap between {junior.employee.level} "
                        f"and {senior.employee.level}",
                        Severity.MEDIUM,
                    ))
    return found


def detect(tenant_id: int, cycle_id: str) -> OutlierResult:
    """Find outliers across every recommendation in the cycle."""
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    recs = db.session.execute(
        select(CompRecommendation)
        .where(CompRecommendation.cycle_id == cycle.id)
        .order_by(CompRecommendation.created_at.asc(), CompRecommendation.id.asc())
    ).scalars().all()

    result = OutlierResult(cycle_id=cycle.id)
    if recs:
        result.outliers.extend(_cohort_outliers(recs))
        result.outliers.extend(_structure_outliers(recs))

    logger.info("Outlier scan found %d outlier(s) across %d recommendation(s)",
                result.total_outliers, len(recs),
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return result


def build_alerts(result: OutlierResult) -> list[MonitorAlert]:
    if not result.total_outliers:
        return []
    by_severity = result.by_severity
    return [MonitorAlert(
        cycle_id=result.cycle_id,
        alert_type=AlertType.OUTLIER.value,
        severity=(Severity.CRITICAL if by_severity.get(Severity.CRITICAL.value)
                  else Severity.HIGH).value,
        title=f"{result.total_outliers} outlier(s) detected",
        details={
            "totalOutliers": result.total_outliers,
            "byType": result.by_type,
            "bySeverity": by_severity,
            "topOutliers": [
                {"employee": o.employee_name, "type": o.outlier_type,
                 "zScore": o.z_score, "details": o.details}
                for o in result.outliers[:TOP_N]
            ],
        },
    )]


def create_alerts(
    tenant_id: int, cycle_id: str, result: OutlierResult, *, commit: bool = True,
) -> list[MonitorAlert]:
    alerts = build_alerts(result)
    persist_alerts(tenant_id, cycle_id, alerts)
    if commit:
        db.session.commit()
    return alerts
