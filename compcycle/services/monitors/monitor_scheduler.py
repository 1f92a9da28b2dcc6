"""
Monitor Scheduler

Periodic and on-demand monitor runs on top of the job queue:

  - check-active-cycles (hourly) fans out one ``run-monitors`` job per cycle
    in ACTIVE, CALIBRATION or APPROVAL
  - trigger_manual_run queues one immediately for a single cycle
  - run_monitors executes drift, policy and outlier detection, persists their
    alerts and records the run in the cycle settings
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import current_app
from sqlalchemy import select

from compcycle.models import db
from compcycle.models.cycle import MONITORED_CYCLE_STATUSES, CompCycle
from compcycle.services.helpers.scoped_queries import get_scoped
from compcycle.services.monitors import budget_drift, outlier_detector, policy_violation
from compcycle.services.scheduler_service import SchedulerService
from compcycle.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

MONITOR_JOB = "run-monitors"


def enqueue_active_cycle_runs() -> dict:
    """Queue a monitor run for every in-flight cycle across all tenants."""
    cycles = db.session.execute(
        select(CompCycle.id, CompCycle.tenant_id)
        .where(CompCycle.status.in_(MONITORED_CYCLE_STATUSES))
        .order_by(CompCycle.created_at.asc())
    ).all()

    for cycle_id, tenant_id in cycles:
        SchedulerService.enqueue(
            MONITOR_JOB,
            {"tenant_id": tenant_id, "cycle_id": cycle_id},
            dedupe_key=f"monitors:{cycle_id}",
            commit=False,
        )
    db.session.commit()

    logger.info("Found %d active cycle(s) to monitor", len(cycles))
    return {"cycles_found": len(cycles)}


def trigger_manual_run(tenant_id: int, cycle_id: str) -> dict:
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    job = SchedulerService.enqueue(
        MONITOR_JOB, {"tenant_id": tenant_id, "cycle_id": cycle.id, "manual": True},
    )
    logger.info("Manual monitor run queued (job %s)", job.id,
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id, "job_id": job.id})
    return {"job_id": job.id}


def run_monitors(
    tenant_id: int,
    cycle_id: str,
    drift_threshold_pct: float | None = None,
    *,
    now: datetime | None = None,
) -> dict:
    """
    Run the detectors for one cycle, persist their alerts and store the run
    under ``settings.lastMonitorRun`` / ``settings.monitorHistory``.

    Returns:
        The run record that was stored.
    """
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    now = as_utc(now) or utcnow()

    drift = budget_drift.detect(tenant_id, cycle.id, drift_threshold_pct, now=now)
    violations = policy_violation.detect(tenant_id, cycle.id)
    outliers = outlier_detector.detect(tenant_id, cycle.id)

    alerts = [
        *budget_drift.create_alerts(tenant_id, cycle.id, drift, commit=False),
        *policy_violation.create_alerts(tenant_id, cycle.id, violations, commit=False),
        *outlier_detector.create_alerts(tenant_id, cycle.id, outliers, commit=False),
    ]

    run = {
        "cycleId": cycle.id,
        "runAt": now.isoformat(),
        "budgetDrift": drift.to_dict(),
        "policyViolations": violations.to_dict(),
        "outliers": outliers.to_dict(),
        "alertsCreated": len(alerts),
    }
    keep = int(current_app.config.get("MONITOR_HISTORY_KEEP", 9))
    cycle.store_settings(cycle.settings_bag.with_monitor_run(run, keep=keep))
    db.session.commit()

    logger.info("Monitor run complete: %d alert(s) created", len(alerts),
                extra={"tenant_id": tenant_id, "cycle_id": cycle.id})
    return run
