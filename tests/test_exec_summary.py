"""
Executive summary tests: blockers, action items, alert and Markdown rendering.
"""

from datetime import timedelta

import pytest

from compcycle.models.notification import Notification
from compcycle.services.monitors import exec_summary
from compcycle.services.monitors.exec_summary import ON_TRACK
from compcycle.utils.helpers import utcnow


@pytest.fixture()
def now():
    return utcnow()


@pytest.fixture()
def healthy_cycle(make_cycle, make_employee, make_rec, now):
    """No budget to drift from, everything approved, plenty of time left."""
    cycle = make_cycle(status="APPROVAL", budget_total=0, name="FY26 Merit",
                       start=now - timedelta(days=30), end=now + timedelta(days=60))
    make_rec(cycle, make_employee(), current=100000, proposed=103000, status="APPROVED")
    return cycle


@pytest.fixture()
def troubled_cycle(make_cycle, make_employee, make_rec, make_budget, make_rule_set, now):
    """20% over budget, a blocking rule and five days left at zero completion."""
    cycle = make_cycle(status="APPROVAL", budget_total=100000, name="FY26 Merit",
                       start=now - timedelta(days=85), end=now + timedelta(days=5))
    make_budget(cycle, "Engineering", allocated=100000, spent=120000)
    make_rec(cycle, make_employee(first_name="Alan", last_name="Turing"),
             current=100000, proposed=105000, status="SUBMITTED")
    make_rule_set([{"actions": [{"type": "block", "params": {"reason": "Freeze"}}]}])
    return cycle


# ── Generation ───────────────────────────────────────────────────────────────


def test_on_track_cycle(healthy_cycle, now):
    summary = exec_summary.generate(healthy_cycle.tenant_id, healthy_cycle.id, now=now)

    assert summary.blockers == []
    assert summary.action_items == [ON_TRACK]
    progress = summary.cycle_progress
    assert progress.completion_pct == 100.0
    assert progress.by_status == {"APPROVED": 1}
    assert progress.days_elapsed == 30
    assert progress.days_remaining == 60
    assert summary.generated_at == now.isoformat()


def test_blockers_and_action_items(troubled_cycle, now):
    summary = exec_summary.generate(troubled_cycle.tenant_id, troubled_cycle.id, now=now)

    assert summary.blockers == [
        "Budget drift is 20.0%, exceeding the critical threshold",
        "1 critical policy violation(s) require immediate attention",
        "Only 5 days remaining with 0.0% completion",
    ]
    assert summary.action_items == [
        "Review budget drift in: Engineering",
        "Resolve 2 policy violation(s)",
        "Escalate 1 critical violation(s) to HR leadership",
        "Process 1 pending recommendation(s)",
    ]
    assert summary.total_violations == 2
    assert summary.total_outliers == 0


def test_summary_serialises(troubled_cycle, now):
    data = exec_summary.generate(troubled_cycle.tenant_id, troubled_cycle.id, now=now).to_dict()

    assert data["cycle_name"] == "FY26 Merit"
    assert data["budget_status"]["overall_drift_pct"] == 20.0
    assert data["top_violations"][0]["employee_name"] == "Alan Turing"
    assert data["cycle_progress"]["status"] == "APPROVAL"


# ── Alert ────────────────────────────────────────────────────────────────────


def test_create_alert_with_blockers(troubled_cycle, admin_user, now):
    summary = exec_summary.generate(troubled_cycle.tenant_id, troubled_cycle.id, now=now)

    [alert] = exec_summary.create_alert(troubled_cycle.tenant_id, summary)

    assert alert.severity == "HIGH"
    note = Notification.query.filter_by(type="EXEC_SUMMARY").one()
    assert note.user_id == admin_user.id
    assert note.title == "Executive Summary: FY26 Merit"
    assert note.meta["blockerCount"] == 3
    assert note.meta["budgetDriftPct"] == 20.0


def test_create_alert_when_on_track_is_info(healthy_cycle, now):
    summary = exec_summary.generate(healthy_cycle.tenant_id, healthy_cycle.id, now=now)
    [alert] = exec_summary.create_alert(healthy_cycle.tenant_id, summary)
    assert alert.severity == "INFO"
    assert alert.details["actionItemCount"] == 1


# ── Markdown ─────────────────────────────────────────────────────────────────


def test_markdown_sections(troubled_cycle, now):
    summary = exec_summary.generate(troubled_cycle.tenant_id, troubled_cycle.id, now=now)

    md = exec_summary.to_markdown(summary)

    assert md.startswith("# Executive Summary: FY26 Merit\n")
    for heading in ("## Budget Status", "## Cycle Progress", "## Top Policy Violations",
                    "## Blockers", "## Action Items"):
        assert heading in md
    assert "- Overall drift: **20.0%**" in md
    assert "- Status: EXCEEDED" in md
    assert "- **Alan Turing** (Engineering): Employee blocked by rule set" in md
    assert md.endswith("- [ ] Process 1 pending recommendation(s)")


def test_markdown_without_problems_skips_sections(healthy_cycle, now):
    md = exec_summary.to_markdown(
        exec_summary.generate(healthy_cycle.tenant_id, healthy_cycle.id, now=now)
    )

    assert "## Blockers" not in md
    assert "## Outliers" not in md
    assert "- Status: Within limits" in md
    assert md.endswith(f"- [ ] {ON_TRACK}")
