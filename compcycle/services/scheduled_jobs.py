"""
Compensation Cycle Platform
Scheduled Jobs.

Concrete job handlers drained by the worker.

Jobs:
    - escalate-approvals: delayed auto-escalation of unactioned recommendations
    - check-active-cycles: hourly fan-out of monitor runs for in-flight cycles
    - run-monitors: drift / policy / outlier pass for one cycle
"""

from __future__ import annotations

from typing import Any

from compcycle.services.scheduler_service import register_job


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Approval Escalation
# ═══════════════════════════════════════════════════════════════════════════

@register_job("escalate-approvals")
def escalate_approvals(app, payload: dict) -> dict[str, Any]:
    """Escalate recommendations still SUBMITTED after the approval deadline."""
    from compcycle.services.approval_service import execute_escalation

    return execute_escalation(
        payload["tenant_id"],
        payload["cycle_id"],
        payload.get("recommendation_ids") or [],
        triggered_by=payload.get("triggered_by"),
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Active Cycle Sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("check-active-cycles", interval_config="MONITOR_INTERVAL_SECONDS")
def check_active_cycles(app, payload: dict) -> dict[str, Any]:
    """Queue a monitor run for every cycle in ACTIVE, CALIBRATION or APPROVAL."""
    from compcycle.services.monitors.monitor_scheduler import enqueue_active_cycle_runs

    return enqueue_active_cycle_runs()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Monitor Run
# ═══════════════════════════════════════════════════════════════════════════

@register_job("run-monitors")
def run_monitors_job(app, payload: dict) -> dict[str, Any]:
    """Run the monitor suite for one cycle and persist its alerts."""
    from compcycle.services.monitors.monitor_scheduler import run_monitors

    return run_monitors(
        payload["tenant_id"],
        payload["cycle_id"],
        drift_threshold_pct=payload.get("drift_threshold_pct"),
    )
