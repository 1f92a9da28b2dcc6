"""
Recommendation batch upsert, listing and manual status tests.
"""

import pytest

from compcycle.core.exceptions import InvalidStateError, ValidationError
from compcycle.models import db
from compcycle.models.cycle import CompRecommendation, CycleBudget
from compcycle.services.recommendation_service import (
    bulk_create_recommendations,
    list_recommendations,
    update_recommendation_status,
)


def _item(emp, **overrides):
    item = {
        "employee_id": emp.id,
        "rec_type": "MERIT_INCREASE",
        "current_value": 100000,
        "proposed_value": 104000,
    }
    item.update(overrides)
    return item


# ═════════════════════════════════════════════════════════════════════════════
# Batch upsert
# ═════════════════════════════════════════════════════════════════════════════


def test_second_upsert_updates_instead_of_creating(make_cycle, make_employee):
    cycle = make_cycle()
    emp = make_employee()

    first = bulk_create_recommendations(cycle.tenant_id, cycle.id, [_item(emp)])
    second = bulk_create_recommendations(
        cycle.tenant_id, cycle.id, [_item(emp, proposed_value=106000)],
    )

    assert first == {"cycle_id": cycle.id, "created": 1, "updated": 0, "total": 1}
    assert second == {"cycle_id": cycle.id, "created": 0, "updated": 1, "total": 1}
    rec = CompRecommendation.query.filter_by(cycle_id=cycle.id).one()
    assert rec.proposed_value == 106000.0
    assert rec.status == "DRAFT"


def test_update_keeps_justification_unless_supplied(make_cycle, make_employee):
    cycle = make_cycle()
    emp = make_employee()
    bulk_create_recommendations(cycle.tenant_id, cycle.id, [
        _item(emp, justification="Strong year", approver_user_id="mgr-1"),
    ])
    bulk_create_recommendations(cycle.tenant_id, cycle.id, [_item(emp, proposed_value=101000)])

    rec = CompRecommendation.query.filter_by(cycle_id=cycle.id).one()
    assert rec.justification == "Strong year"
    assert rec.approver_user_id == "mgr-1"


def test_same_employee_different_types_are_distinct(make_cycle, make_employee):
    cycle = make_cycle()
    emp = make_employee()
    result = bulk_create_recommendations(cycle.tenant_id, cycle.id, [
        _item(emp),
        _item(emp, rec_type="BONUS", current_value=0, proposed_value=5000),
    ])
    assert result["created"] == 2


def test_batches_cross_boundaries(make_cycle, make_employee, app):
    # BULK_BATCH_SIZE is 2 under the testing config
    assert app.config["BULK_BATCH_SIZE"] == 2
    cycle = make_cycle()
    emps = [make_employee() for _ in range(5)]

    result = bulk_create_recommendations(cycle.tenant_id, cycle.id, [_item(e) for e in emps])

    assert result["created"] == 5
    assert CompRecommendation.query.filter_by(cycle_id=cycle.id).count() == 5


def test_upsert_recalculates_spend(make_cycle, make_employee, make_budget):
    cycle = make_cycle()
    make_budget(cycle, "Engineering", allocated=10000)
    emp = make_employee(department="Engineering")

    bulk_create_recommendations(cycle.tenant_id, cycle.id, [_item(emp)])

    row = CycleBudget.query.filter_by(cycle_id=cycle.id).one()
    assert row.spent == 4000.0
    assert row.remaining == 6000.0


@pytest.mark.parametrize("items", [
    [],
    [{"rec_type": "MERIT_INCREASE"}],
    [{"employee_id": "x", "rec_type": "RAISE"}],
])
def test_invalid_payload_is_rejected(items, make_cycle):
    cycle = make_cycle()
    with pytest.raises(ValidationError):
        bulk_create_recommendations(cycle.tenant_id, cycle.id, items)


def test_unknown_employee_rejects_whole_request(make_cycle, make_employee):
    cycle = make_cycle()
    emp = make_employee()
    with pytest.raises(ValidationError) as exc:
        bulk_create_recommendations(cycle.tenant_id, cycle.id, [
            _item(emp), {"employee_id": "ghost", "rec_type": "BONUS"},
        ])
    assert exc.value.details == {"employee_ids": ["ghost"]}
    assert CompRecommendation.query.count() == 0


def test_other_tenants_employee_is_unknown(make_cycle, make_employee, tenant):
    from compcycle.models.auth import Tenant

    other = Tenant(name="Other", slug="other")
    db.session.add(other)
    db.session.commit()
    foreign = make_employee(tenant_id=other.id)
    cycle = make_cycle()

    with pytest.raises(ValidationError):
        bulk_create_recommendations(cycle.tenant_id, cycle.id, [_item(foreign)])


def test_non_numeric_value_reports_index(make_cycle, make_employee):
    cycle = make_cycle()
    emp = make_employee()
    with pytest.raises(ValidationError) as exc:
        bulk_create_recommendations(cycle.tenant_id, cycle.id, [
            _item(emp), _item(emp, rec_type="BONUS", proposed_value="abc"),
        ])
    assert exc.value.details == {"index": 1, "field": "proposed_value"}


# ═════════════════════════════════════════════════════════════════════════════
# Listing
# ═════════════════════════════════════════════════════════════════════════════


def test_list_filters_and_paginates(make_cycle, make_employee, make_rec):
    cycle = make_cycle()
    for i in range(3):
        make_rec(cycle, make_employee(department="Engineering", level="L3"))
    make_rec(cycle, make_employee(department="Sales", level="L2"), status="SUBMITTED")

    page = list_recommendations(cycle.tenant_id, cycle.id, department="Engineering", limit=2)
    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert len(page["items"]) == 2
    assert page["items"][0]["employee"]["department"] == "Engineering"

    submitted = list_recommendations(cycle.tenant_id, cycle.id, status="submitted")
    assert submitted["total"] == 1
    assert list_recommendations(cycle.tenant_id, cycle.id, level="L2")["total"] == 1


# ═════════════════════════════════════════════════════════════════════════════
# Manual status
# ═════════════════════════════════════════════════════════════════════════════


def test_manual_approval_stamps_approver(make_cycle, make_employee, make_rec):
    cycle = make_cycle()
    rec = make_rec(cycle, make_employee(), status="SUBMITTED")

    result = update_recommendation_status(
        cycle.tenant_id, cycle.id, rec.id, "approved", acting_user_id="hr-1",
    )

    assert result["status"] == "APPROVED"
    assert result["approver_user_id"] == "hr-1"
    assert result["approved_at"]


def test_manual_status_refused_when_locked(make_cycle, make_employee, make_rec):
    cycle = make_cycle()
    rec = make_rec(cycle, make_employee(), status="SUBMITTED", locked=True)
    with pytest.raises(InvalidStateError):
        update_recommendation_status(cycle.tenant_id, cycle.id, rec.id, "APPROVED")


def test_manual_status_rejects_unknown_value(make_cycle, make_employee, make_rec):
    cycle = make_cycle()
    rec = make_rec(cycle, make_employee())
    with pytest.raises(ValidationError):
        update_recommendation_status(cycle.tenant_id, cycle.id, rec.id, "PENDING")


def test_manual_approval_refused_for_draft(make_cycle, make_employee, make_rec):
    cycle = make_cycle()
    rec = make_rec(cycle, make_employee(), status="DRAFT")

    with pytest.raises(InvalidStateError, match="Cannot approve recommendation in DRAFT status"):
        update_recommendation_status(cycle.tenant_id, cycle.id, rec.id, "APPROVED")

    db.session.refresh(rec)
    assert rec.status == "DRAFT"
    assert rec.approved_at is None


def test_manual_rejection_allowed_from_escalated(make_cycle, make_employee, make_rec):
    cycle = make_cycle()
    rec = make_rec(cycle, make_employee(), status="ESCALATED")

    result = update_recommendation_status(cycle.tenant_id, cycle.id, rec.id, "REJECTED")

    assert result["status"] == "REJECTED"


def test_manual_status_can_move_draft_to_submitted(make_cycle, make_employee, make_rec):
    cycle = make_cycle()
    rec = make_rec(cycle, make_employee(), status="DRAFT")

    result = update_recommendation_status(cycle.tenant_id, cycle.id, rec.id, "SUBMITTED")

    assert result["status"] == "SUBMITTED"
