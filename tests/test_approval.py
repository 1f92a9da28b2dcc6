"""
Approval engine tests.

Covers:
    1. Bulk approve / reject with per-item error collection
    2. Conditional writes (status + lock guard)
    3. Approval chain default vs cycle settings
    4. Pending queue filters
    5. Approver nudges
"""

import pytest
from sqlalchemy import update

from compcycle.core.exceptions import NotFoundError, ValidationError
from compcycle.models import db
from compcycle.models.audit import AuditLog
from compcycle.models.cycle import CompRecommendation
from compcycle.models.notification import Notification
from compcycle.services import approval_service
from compcycle.services.approval_service import (
    DEFAULT_APPROVAL_CHAIN,
    NUDGE_TITLE,
    bulk_approve_reject,
    get_approval_chain,
    get_pending_approvals,
    send_nudge,
)


def _decide(rec, decision, **extra):
    return {"recommendation_id": rec.id, "decision": decision, **extra}


def _status(rec_id):
    db.session.expire_all()
    return db.session.get(CompRecommendation, rec_id).status


# ═════════════════════════════════════════════════════════════════════════════
# Bulk decisions
# ═════════════════════════════════════════════════════════════════════════════


def test_bulk_decisions_apply_and_stamp(make_cycle, make_employee, make_rec):
    cycle = make_cycle(status="APPROVAL")
    a = make_rec(cycle, make_employee(), status="SUBMITTED")
    b = make_rec(cycle, make_employee(), status="ESCALATED")
    c = make_rec(cycle, make_employee(), status="SUBMITTED")

    result = bulk_approve_reject(cycle.tenant_id, cycle.id, "mgr-1", [
        _decide(a, "APPROVED"),
        _decide(b, "approved", comment="ok"),
        _decide(c, "REJECTED", override_justification="over band"),
    ])

    assert result == {"cycle_id": cycle.id, "approved": 2, "rejected": 1, "errors": [], "total": 3}
    db.session.expire_all()
    approved = db.session.get(CompRecommendation, a.id)
    assert approved.status == "APPROVED"
    assert approved.approver_user_id == "mgr-1"
    assert approved.approved_at is not None
    rejected = db.session.get(CompRecommendation, c.id)
    assert rejected.status == "REJECTED"
    assert rejected.approved_at is None


def test_each_applied_decision_is_audited(make_cycle, make_employee, make_rec):
    cycle = make_cycle(status="APPROVAL")
    rec = make_rec(cycle, make_employee(), status="SUBMITTED")

    bulk_approve_reject(cycle.tenant_id, cycle.id, "mgr-1", [
        _decide(rec, "REJECTED", comment="too high"),
    ])

    row = AuditLog.query.filter_by(action="RECOMMENDATION_REJECTED", entity_id=rec.id).one()
    assert row.changes["previous_status"] == "SUBMITTED"
    assert row.changes["comment"] == "too high"


@pytest.mark.parametrize("status,decision,message", [
    ("DRAFT", "APPROVED", "Cannot approve recommendation in DRAFT status"),
    ("APPROVED", "REJECTED", "Cannot reject recommendation in APPROVED status"),
    ("REJECTED", "APPROVED", "Cannot approve recommendation in REJECTED status"),
])
def test_undecidable_status_is_reported(status, decision, message, make_cycle, make_employee, make_rec):
    cycle = make_cycle(status="APPROVAL")
    rec = make_rec(cycle, make_employee(), status=status)

    result = bulk_approve_reject(cycle.tenant_id, cycle.id, "mgr-1", [_decide(rec, decision)])

    assert result["approved"] == result["rejected"] == 0
    assert result["errors"] == [{"recommendation_id": rec.id, "error": message}]
    assert _status(rec.id) == status


def test_locked_recommendation_is_untouched(make_cycle, make_employee, make_rec):
    cycle = make_cycle(status="CALIBRATION")
    rec = make_rec(cycle, make_employee(), status="SUBMITTED", locked=True)

    result = bulk_approve_reject(cycle.tenant_id, cycle.id, "mgr-1", [_decide(rec, "APPROVED")])

    assert result["errors"][0]["error"] == "Recommendation is locked for calibration"
    assert _status(rec.id) == "SUBMITTED"


def test_unknown_and_foreign_ids_are_not_found(make_cycle, make_employee, make_rec):
    cycle = make_cycle(status="APPROVAL")
    other_cycle = make_cycle(status="APPROVAL", name="Other")
    foreign = make_rec(other_cycle, make_employee(), status="SUBMITTED")

    result = bulk_approve_reject(cycle.tenant_id, cycle.id, "mgr-1", [
        {"recommendation_id": "missing", "decision": "APPROVED"},
        _decide(foreign, "APPROVED"),
    ])

    assert [e["error"] for e in result["errors"]] == ["Recommendation not found"] * 2
    assert _status(foreign.id) == "SUBMITTED"


def test_good_items_apply_next_to_bad_ones_across_batches(make_cycle, make_employee, make_rec):
    # Five items span three batches of two
    cycle = make_cycle(status="APPROVAL")
    recs = [make_rec(cycle, make_employee(), status="SUBMITTED") for _ in range(4)]
    draft = make_rec(cycle, make_employee(), status="DRAFT")

    result = bulk_approve_reject(cycle.tenant_id, cycle.id, "mgr-1",
                                 [_decide(r, "APPROVED") for r in recs] + [_decide(draft, "APPROVED")])

    assert result["approved"] == 4
    assert len(result["errors"]) == 1
    assert result["total"] == 5


def test_concurrent_write_loses_the_race(make_cycle, make_employee, make_rec, monkeypatch):
    cycle = make_cycle(status="APPROVAL")
    rec = make_rec(cycle, make_employee(), status="SUBMITTED")

    def racing_update(entity):
        # Another writer moves the row after it was read but before the guarded write
        db.session.execute(
            update(CompRecommendation)
            .where(CompRecommendation.id == rec.id)
            .values(status="ESCALATED")
            .execution_options(synchronize_session=False)
        )
        return update(entity)

    monkeypatch.setattr(approval_service, "update", racing_update)

    result = bulk_approve_reject(cycle.tenant_id, cycle.id, "mgr-1", [_decide(rec, "APPROVED")])

    assert result["approved"] == 0
    assert result["errors"] == [
        {"recommendation_id": rec.id, "error": "Recommendation was modified concurrently"},
    ]
    assert _status(rec.id) == "ESCALATED"


@pytest.mark.parametrize("decisions", [
    [],
    [{"decision": "APPROVED"}],
    [{"recommendation_id": "x", "decision": "MAYBE"}],
])
def test_malformed_decisions_raise(decisions, make_cycle):
    cycle = make_cycle(status="APPROVAL")
    with pytest.raises(ValidationError):
        bulk_approve_reject(cycle.tenant_id, cycle.id, "mgr-1", decisions)


def test_other_tenant_cycle_is_not_found(make_cycle, tenant):
    cycle = make_cycle(status="APPROVAL")
    with pytest.raises(NotFoundError):
        bulk_approve_reject(tenant.id + 1, cycle.id, "mgr-1",
                            [{"recommendation_id": "x", "decision": "APPROVED"}])


# ═════════════════════════════════════════════════════════════════════════════
# Chain & pending
# ═════════════════════════════════════════════════════════════════════════════


def test_default_approval_chain(make_cycle):
    cycle = make_cycle()
    assert get_approval_chain(cycle.tenant_id, cycle.id) == DEFAULT_APPROVAL_CHAIN
    assert DEFAULT_APPROVAL_CHAIN == ["MANAGER", "HR_MANAGER", "ADMIN"]


def test_configured_approval_chain(make_cycle):
    cycle = make_cycle(settings={"approvalChain": ["HR_MANAGER"]})
    assert get_approval_chain(cycle.tenant_id, cycle.id) == ["HR_MANAGER"]


def test_empty_configured_chain_falls_back(make_cycle):
    cycle = make_cycle(settings={"approvalChain": []})
    assert get_approval_chain(cycle.tenant_id, cycle.id) == DEFAULT_APPROVAL_CHAIN


def test_pending_lists_submitted_and_escalated(make_cycle, make_employee, make_rec):
    cycle = make_cycle(status="APPROVAL")
    make_rec(cycle, make_employee(department="Sales"), status="SUBMITTED")
    make_rec(cycle, make_employee(department="Engineering"), status="ESCALATED")
    make_rec(cycle, make_employee(), status="DRAFT")
    make_rec(cycle, make_employee(), status="APPROVED")

    page = get_pending_approvals(cycle.tenant_id, cycle.id)
    assert page["total"] == 2
    assert {i["status"] for i in page["items"]} == {"SUBMITTED", "ESCALATED"}

    assert get_pending_approvals(cycle.tenant_id, cycle.id, department="Sales")["total"] == 1
    assert get_pending_approvals(cycle.tenant_id, cycle.id, status="escalated")["total"] == 1
    with pytest.raises(ValidationError):
        get_pending_approvals(cycle.tenant_id, cycle.id, status="DRAFT")


# ═════════════════════════════════════════════════════════════════════════════
# Nudges
# ═════════════════════════════════════════════════════════════════════════════


def test_nudge_targets_distinct_pending_approvers(make_cycle, make_employee, make_rec):
    cycle = make_cycle(status="APPROVAL", name="FY26 Merit")
    make_rec(cycle, make_employee(), status="SUBMITTED", approver_user_id="mgr-2")
    make_rec(cycle, make_employee(), status="ESCALATED", approver_user_id="mgr-1")
    make_rec(cycle, make_employee(), status="SUBMITTED", approver_user_id="mgr-1")
    make_rec(cycle, make_employee(), status="APPROVED", approver_user_id="mgr-3")

    result = send_nudge(cycle.tenant_id, cycle.id, acting_user_id="hr-1")

    assert result == {"nudged": 2, "target_user_ids": ["mgr-1", "mgr-2"]}
    notes = Notification.query.filter_by(type="APPROVAL_NUDGE").all()
    assert sorted(n.user_id for n in notes) == ["mgr-1", "mgr-2"]
    assert all(n.title == NUDGE_TITLE for n in notes)
    assert 'cycle "FY26 Merit"' in notes[0].body
    assert notes[0].entity_id == cycle.id
    [audit] = AuditLog.query.filter_by(action="NUDGE_SENT").all()
    assert audit.changes == {"target_user_ids": ["mgr-1", "mgr-2"], "count": 2}


def test_nudge_explicit_targets_and_message(make_cycle):
    cycle = make_cycle(status="APPROVAL")

    result = send_nudge(cycle.tenant_id, cycle.id, target_user_ids=["u-9", "u-9", "u-8"],
                        message="Please finish today")

    assert result["target_user_ids"] == ["u-9", "u-8"]
    assert {n.body for n in Notification.query.all()} == {"Please finish today"}


def test_nudge_without_targets_sends_nothing(make_cycle):
    cycle = make_cycle(status="APPROVAL")
    assert send_nudge(cycle.tenant_id, cycle.id) == {"nudged": 0, "target_user_ids": []}
    assert Notification.query.count() == 0
