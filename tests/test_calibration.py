"""
Calibration session tests.

Covers:
    1. Session creation by id list or employee filter
    2. Lock / unlock and the effect on approvals
    3. Outcomes: adjusted values flow into proposed_value
    4. Completion / cancellation releases participants to SUBMITTED
    5. Closed sessions are immutable
"""

import pytest

from compcycle.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from compcycle.models import db
from compcycle.models.cycle import SESSION_METADATA_KEY, CompRecommendation, CycleBudget
from compcycle.services.approval_service import bulk_approve_reject
from compcycle.services.calibration_service import (
    create_session,
    get_session,
    list_sessions,
    lock_recommendations,
    unlock_recommendations,
    update_session,
)


def _recs(*ids):
    db.session.expire_all()
    return [db.session.get(CompRecommendation, i) for i in ids]


@pytest.fixture()
def calibration(make_cycle, make_employee, make_rec):
    """CALIBRATION cycle with three Engineering recommendations and one in Sales."""
    cycle = make_cycle(status="CALIBRATION")
    recs = [
        make_rec(cycle, make_employee(department="Engineering"), status="DRAFT"),
        make_rec(cycle, make_employee(department="Engineering"), status="SUBMITTED"),
        make_rec(cycle, make_employee(department="Engineering"), status="SUBMITTED"),
    ]
    make_rec(cycle, make_employee(department="Sales"), status="SUBMITTED")
    return cycle, recs


def _open(cycle, recs, **kwargs):
    return create_session(cycle.tenant_id, cycle.id, "hr-1", "Eng L3 calibration",
                          recommendation_ids=[r.id for r in recs], **kwargs)


# ── Creation ─────────────────────────────────────────────────────────────────


def test_session_snapshots_participants(calibration):
    cycle, recs = calibration

    session = _open(cycle, recs)

    assert session["status"] == "ACTIVE"
    assert session["participant_count"] == 3
    assert {p["recommendation_id"] for p in session["participants"]} == {r.id for r in recs}
    assert session["participants"][0]["original_status"] == "DRAFT"
    assert session["created_by"] == "hr-1"


def test_session_by_department_filter(calibration):
    cycle, _ = calibration
    session = create_session(cycle.tenant_id, cycle.id, "hr-1", "Sales", department="Sales")
    assert session["participant_count"] == 1


def test_session_requires_name_and_matches(calibration):
    cycle, recs = calibration
    with pytest.raises(ValidationError):
        create_session(cycle.tenant_id, cycle.id, "hr-1", "  ", recommendation_ids=[recs[0].id])
    with pytest.raises(InvalidStateError) as exc:
        create_session(cycle.tenant_id, cycle.id, "hr-1", "Empty", department="Legal")
    assert str(exc.value) == "No recommendations found matching the criteria"


def test_list_and_get_sessions(calibration):
    cycle, recs = calibration
    created = _open(cycle, recs)

    assert [s["id"] for s in list_sessions(cycle.tenant_id, cycle.id)] == [created["id"]]
    assert get_session(cycle.tenant_id, cycle.id, created["id"])["name"] == "Eng L3 calibration"
    with pytest.raises(NotFoundError):
        get_session(cycle.tenant_id, cycle.id, "nope")


# ── Locking ──────────────────────────────────────────────────────────────────


def test_lock_holds_participants_and_blocks_approval(calibration):
    cycle, recs = calibration
    session = _open(cycle, recs)

    assert lock_recommendations(cycle.tenant_id, cycle.id, session["id"]) == 3
    assert all(r.locked for r in _recs(*[r.id for r in recs]))

    result = bulk_approve_reject(cycle.tenant_id, cycle.id, "mgr-1",
                                 [{"recommendation_id": recs[1].id, "decision": "APPROVED"}])
    assert result["errors"][0]["error"] == "Recommendation is locked for calibration"


def test_lock_skips_decided_and_already_locked(make_cycle, make_employee, make_rec):
    cycle = make_cycle(status="CALIBRATION")
    approved = make_rec(cycle, make_employee(), status="APPROVED")
    held = make_rec(cycle, make_employee(), status="SUBMITTED", locked=True)
    free = make_rec(cycle, make_employee(), status="SUBMITTED")
    session = _open(cycle, [approved, held, free])

    assert lock_recommendations(cycle.tenant_id, cycle.id, session["id"]) == 1
    assert not _recs(approved.id)[0].locked


def test_unlock_releases_to_submitted(calibration):
    cycle, recs = calibration
    session = _open(cycle, recs)
    lock_recommendations(cycle.tenant_id, cycle.id, session["id"])

    assert unlock_recommendations(cycle.tenant_id, cycle.id, session["id"]) == 3
    assert [(r.status, r.locked) for r in _recs(*[r.id for r in recs])] == [("SUBMITTED", False)] * 3


# ── Outcomes & closing ───────────────────────────────────────────────────────


def test_outcome_adjusts_proposed_value_and_spend(calibration, make_budget):
    cycle, recs = calibration
    make_budget(cycle, "Engineering", allocated=50000)
    session = _open(cycle, recs)

    updated = update_session(cycle.tenant_id, cycle.id, session["id"], "hr-1", outcomes={
        recs[0].id: {"adjusted_value": 102000, "rank": 1, "notes": "Trim"},
    })

    outcome = updated["outcomes"][recs[0].id]
    assert outcome["adjusted_value"] == 102000
    assert outcome["rank"] == 1
    assert outcome["recorded_by"] == "hr-1"
    assert _recs(recs[0].id)[0].proposed_value == 102000.0
    # 2000 + 5000 + 5000 across the three Engineering rows
    assert CycleBudget.query.filter_by(cycle_id=cycle.id).one().spent == 12000.0


def test_outcomes_merge_with_earlier_entries(calibration):
    cycle, recs = calibration
    session = _open(cycle, recs)
    update_session(cycle.tenant_id, cycle.id, session["id"],
                   outcomes={recs[0].id: {"adjusted_value": 101000, "notes": "first"}})

    updated = update_session(cycle.tenant_id, cycle.id, session["id"],
                             outcomes={recs[0].id: {"rank": 2}})

    outcome = updated["outcomes"][recs[0].id]
    assert outcome["adjusted_value"] == 101000
    assert outcome["rank"] == 2
    assert outcome["notes"] == "first"


def test_outcomes_for_strangers_are_rejected(calibration):
    cycle, recs = calibration
    session = _open(cycle, recs[:1])

    with pytest.raises(ValidationError) as exc:
        update_session(cycle.tenant_id, cycle.id, session["id"],
                       outcomes={recs[1].id: {"adjusted_value": 1}})

    assert exc.value.details == {"recommendation_ids": [recs[1].id]}


def test_metadata_is_kept_under_reserved_key(calibration):
    cycle, recs = calibration
    session = _open(cycle, recs)
    update_session(cycle.tenant_id, cycle.id, session["id"], metadata={"facilitator": "Kim"})

    updated = update_session(cycle.tenant_id, cycle.id, session["id"], metadata={"room": "4B"})

    assert updated["outcomes"][SESSION_METADATA_KEY] == {"facilitator": "Kim", "room": "4B"}


def test_completion_releases_every_participant(calibration):
    cycle, recs = calibration
    session = _open(cycle, recs)
    lock_recommendations(cycle.tenant_id, cycle.id, session["id"])

    closed = update_session(cycle.tenant_id, cycle.id, session["id"], "hr-1", status="completed")

    assert closed["status"] == "COMPLETED"
    assert [(r.status, r.locked) for r in _recs(*[r.id for r in recs])] == [("SUBMITTED", False)] * 3


def test_cancellation_releases_too(calibration):
    cycle, recs = calibration
    session = _open(cycle, recs)
    lock_recommendations(cycle.tenant_id, cycle.id, session["id"])

    update_session(cycle.tenant_id, cycle.id, session["id"], status="CANCELLED")

    assert not any(r.locked for r in _recs(*[r.id for r in recs]))


def test_closed_session_is_immutable(calibration):
    cycle, recs = calibration
    session = _open(cycle, recs)
    update_session(cycle.tenant_id, cycle.id, session["id"], status="COMPLETED")

    with pytest.raises(InvalidStateError) as exc:
        update_session(cycle.tenant_id, cycle.id, session["id"],
                       outcomes={recs[0].id: {"adjusted_value": 1}})
    assert str(exc.value) == "Cannot update a completed calibration session"

    with pytest.raises(InvalidStateError):
        lock_recommendations(cycle.tenant_id, cycle.id, session["id"])


def test_unknown_session_status_is_rejected(calibration):
    cycle, recs = calibration
    session = _open(cycle, recs)
    with pytest.raises(ValidationError):
        update_session(cycle.tenant_id, cycle.id, session["id"], status="PAUSED")


def test_bad_outcome_leaves_every_row_untouched(calibration):
    cycle, recs = calibration
    session = _open(cycle, recs)

    with pytest.raises(ValidationError) as exc:
        update_session(cycle.tenant_id, cycle.id, session["id"], outcomes={
            recs[0].id: {"adjusted_value": 999},
            recs[1].id: {"adjusted_value": "abc"},
        })
    assert exc.value.details == {"recommendation_id": recs[1].id}

    # A later commit in the same context must not persist half the update
    db.session.commit()
    assert [r.proposed_value for r in _recs(recs[0].id, recs[1].id)] == [105000.0, 105000.0]
    assert get_session(cycle.tenant_id, cycle.id, session["id"])["outcomes"] == {}


def test_non_object_metadata_is_rejected(calibration):
    cycle, recs = calibration
    session = _open(cycle, recs)
    with pytest.raises(ValidationError):
        update_session(cycle.tenant_id, cycle.id, session["id"], metadata=["room"])
