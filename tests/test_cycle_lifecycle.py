"""
Cycle state machine tests.

Covers:
    1. Transition table closure: every listed edge, every unlisted edge
    2. Role guards per (from, to) pair
    3. Pre-transition invariants (budget, recommendations)
    4. Settings bag: lastTransition merged, other keys preserved
    5. Audit row written per transition
"""

import pytest

from compcycle.core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from compcycle.models import db
from compcycle.models.audit import AuditLog
from compcycle.models.cycle import CYCLE_STATUSES, CYCLE_TRANSITIONS, CompCycle, CycleSettings
from compcycle.services.cycle_lifecycle import (
    CYCLE_MACHINE,
    get_allowed_transitions,
    transition,
)
from compcycle.services.cycle_service import update_cycle


# ═════════════════════════════════════════════════════════════════════════════
# Machine definition
# ═════════════════════════════════════════════════════════════════════════════


def test_machine_mirrors_transition_table():
    assert set(CYCLE_MACHINE) == set(CYCLE_TRANSITIONS)
    for source, targets in CYCLE_TRANSITIONS.items():
        assert get_allowed_transitions(source) == targets


def test_machine_is_read_only():
    with pytest.raises(TypeError):
        CYCLE_MACHINE["DRAFT"] = {}
    with pytest.raises(TypeError):
        CYCLE_MACHINE["DRAFT"]["ACTIVE"] = None


def test_terminal_states_have_no_targets():
    assert get_allowed_transitions("COMPLETED") == []
    assert get_allowed_transitions("CANCELLED") == []


# ═════════════════════════════════════════════════════════════════════════════
# Closure
# ═════════════════════════════════════════════════════════════════════════════


_VALID_EDGES = [(s, t) for s, targets in CYCLE_TRANSITIONS.items() for t in targets]
_INVALID_EDGES = [
    (s, t) for s in sorted(CYCLE_STATUSES) for t in sorted(CYCLE_STATUSES)
    if t not in CYCLE_TRANSITIONS[s]
]


@pytest.mark.parametrize("source,target", _VALID_EDGES)
def test_every_listed_edge_succeeds_for_admin(source, target, make_cycle, make_employee, make_rec):
    cycle = make_cycle(status=source)
    make_rec(cycle, make_employee())

    result = transition(cycle.tenant_id, cycle.id, target, "ADMIN")

    assert result["status"] == target
    assert result["settings"]["lastTransition"]["from"] == source
    assert result["settings"]["lastTransition"]["to"] == target


@pytest.mark.parametrize("source,target", _INVALID_EDGES)
def test_every_unlisted_edge_is_rejected(source, target, make_cycle):
    cycle = make_cycle(status=source)

    with pytest.raises(InvalidTransitionError) as exc:
        transition(cycle.tenant_id, cycle.id, target, "ADMIN")

    db.session.refresh(cycle)
    assert cycle.status == source
    assert exc.value.allowed == CYCLE_TRANSITIONS[source]


def test_invalid_transition_message_lists_allowed_targets(make_cycle):
    cycle = make_cycle(status="DRAFT")
    with pytest.raises(InvalidTransitionError) as exc:
        transition(cycle.tenant_id, cycle.id, "COMPLETED", "ADMIN")
    assert str(exc.value) == "Cannot transition from DRAFT to COMPLETED. Allowed: PLANNING, CANCELLED"


def test_terminal_message(make_cycle):
    cycle = make_cycle(status="COMPLETED")
    with pytest.raises(InvalidTransitionError) as exc:
        transition(cycle.tenant_id, cycle.id, "ACTIVE", "ADMIN")
    assert str(exc.value).endswith("Allowed: none (terminal state)")


def test_unknown_target_status_is_invalid_transition(make_cycle):
    cycle = make_cycle(status="DRAFT")
    with pytest.raises(InvalidTransitionError):
        transition(cycle.tenant_id, cycle.id, "ARCHIVED", "ADMIN")


def test_lowercase_target_is_normalised(make_cycle):
    cycle = make_cycle(status="DRAFT")
    assert transition(cycle.tenant_id, cycle.id, "planning", "ADMIN")["status"] == "PLANNING"


# ═════════════════════════════════════════════════════════════════════════════
# Role guards
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize("source,target", [
    ("DRAFT", "PLANNING"),
    ("PLANNING", "ACTIVE"),
    ("ACTIVE", "CALIBRATION"),
    ("CALIBRATION", "APPROVAL"),
    ("DRAFT", "CANCELLED"),
])
def test_hr_manager_may_take_admin_or_hr_edges(source, target, make_cycle, make_employee, make_rec):
    cycle = make_cycle(status=source)
    make_rec(cycle, make_employee())
    assert transition(cycle.tenant_id, cycle.id, target, "HR_MANAGER")["status"] == target


@pytest.mark.parametrize("source,target", [
    ("APPROVAL", "COMPLETED"),
    ("PLANNING", "CANCELLED"),
    ("ACTIVE", "CANCELLED"),
    ("CALIBRATION", "CANCELLED"),
    ("APPROVAL", "CANCELLED"),
])
def test_admin_only_edges_refuse_hr_manager(source, target, make_cycle, make_employee, make_rec):
    cycle = make_cycle(status=source)
    make_rec(cycle, make_employee())

    with pytest.raises(ForbiddenError) as exc:
        transition(cycle.tenant_id, cycle.id, target, "HR_MANAGER")

    assert str(exc.value) == (
        f"Role HR_MANAGER is not allowed to transition from {source} to {target}"
    )
    db.session.refresh(cycle)
    assert cycle.status == source


@pytest.mark.parametrize("role", ["MANAGER", "EMPLOYEE", None])
def test_guarded_edge_refuses_other_roles(role, make_cycle):
    cycle = make_cycle(status="DRAFT")
    with pytest.raises(ForbiddenError):
        transition(cycle.tenant_id, cycle.id, "PLANNING", role)


@pytest.mark.parametrize("source,target", [
    ("PLANNING", "DRAFT"),
    ("ACTIVE", "APPROVAL"),
    ("CALIBRATION", "ACTIVE"),
    ("APPROVAL", "CALIBRATION"),
])
def test_unguarded_edges_accept_any_role(source, target, make_cycle):
    cycle = make_cycle(status=source)
    assert transition(cycle.tenant_id, cycle.id, target, "EMPLOYEE")["status"] == target


# ═════════════════════════════════════════════════════════════════════════════
# Invariants
# ═════════════════════════════════════════════════════════════════════════════


def test_activation_requires_budget(make_cycle):
    cycle = make_cycle(status="PLANNING", budget_total=0)
    with pytest.raises(InvalidStateError) as exc:
        transition(cycle.tenant_id, cycle.id, "ACTIVE", "ADMIN")
    assert str(exc.value) == "Budget total must be set before activating the cycle"


def test_calibration_requires_recommendations(make_cycle):
    cycle = make_cycle(status="ACTIVE")
    with pytest.raises(InvalidStateError) as exc:
        transition(cycle.tenant_id, cycle.id, "CALIBRATION", "ADMIN")
    assert str(exc.value) == "At least one recommendation must exist before calibration"


def test_completion_requires_recommendations(make_cycle):
    cycle = make_cycle(status="APPROVAL")
    with pytest.raises(InvalidStateError) as exc:
        transition(cycle.tenant_id, cycle.id, "COMPLETED", "ADMIN")
    assert str(exc.value) == "Cannot complete a cycle with no recommendations"


def test_role_is_checked_before_invariant(make_cycle):
    cycle = make_cycle(status="APPROVAL")
    with pytest.raises(ForbiddenError):
        transition(cycle.tenant_id, cycle.id, "COMPLETED", "HR_MANAGER")


# ═════════════════════════════════════════════════════════════════════════════
# Side effects
# ═════════════════════════════════════════════════════════════════════════════


def test_settings_keys_survive_transition(make_cycle):
    cycle = make_cycle(status="DRAFT", settings={"approvalChain": ["MANAGER"], "customKey": 7})

    result = transition(cycle.tenant_id, cycle.id, "PLANNING", "ADMIN", "Kick-off")

    settings = result["settings"]
    assert settings["approvalChain"] == ["MANAGER"]
    assert settings["customKey"] == 7
    assert settings["lastTransition"]["reason"] == "Kick-off"
    assert settings["lastTransition"]["at"]


def test_transition_history_accumulates(make_cycle):
    cycle = make_cycle(status="DRAFT")
    transition(cycle.tenant_id, cycle.id, "PLANNING", "ADMIN")
    result = transition(cycle.tenant_id, cycle.id, "DRAFT", "ADMIN")

    history = result["settings"]["transitionHistory"]
    assert [(h["from"], h["to"]) for h in history] == [("DRAFT", "PLANNING"), ("PLANNING", "DRAFT")]


def test_transition_writes_one_audit_row(make_cycle):
    cycle = make_cycle(status="DRAFT")
    transition(cycle.tenant_id, cycle.id, "PLANNING", "HR_MANAGER", acting_user_id="u-1")

    rows = AuditLog.query.filter_by(entity_id=cycle.id, action="CYCLE_TRANSITIONED").all()
    assert len(rows) == 1
    assert rows[0].user_id == "u-1"
    assert rows[0].changes["status"] == {"old": "DRAFT", "new": "PLANNING"}
    assert rows[0].changes["role"] == "HR_MANAGER"


def test_cross_tenant_transition_is_not_found(make_cycle, tenant):
    cycle = make_cycle(status="DRAFT")
    with pytest.raises(NotFoundError):
        transition(tenant.id + 1, cycle.id, "PLANNING", "ADMIN")
    assert db.session.get(CompCycle, cycle.id).status == "DRAFT"


def test_settings_patch_cannot_rewrite_transition_history(make_cycle):
    cycle = make_cycle(status="DRAFT")
    transition(cycle.tenant_id, cycle.id, "PLANNING", "ADMIN")

    with pytest.raises(ValidationError, match="read-only") as exc:
        update_cycle(
            cycle.tenant_id, cycle.id,
            {"name": "Renamed", "settings": {"transitionHistory": [], "lastTransition": {"from": "X"}}},
        )
    assert exc.value.details == {"fields": ["lastTransition", "transitionHistory"]}

    db.session.rollback()
    stored = db.session.get(CompCycle, cycle.id)
    assert stored.name == "2026 Merit Cycle"
    assert stored.settings["lastTransition"]["from"] == "DRAFT"
    assert len(stored.settings["transitionHistory"]) == 1


def test_settings_patch_merges_editable_keys(make_cycle):
    cycle = make_cycle(status="DRAFT", settings={"customKey": 7})
    transition(cycle.tenant_id, cycle.id, "PLANNING", "ADMIN")

    result = update_cycle(cycle.tenant_id, cycle.id, {"settings": {"escalationDelayMs": 60000}})

    settings = result["settings"]
    assert settings["escalationDelayMs"] == 60000
    assert settings["customKey"] == 7
    assert settings["lastTransition"]["to"] == "PLANNING"


def test_settings_overrides_ignore_history_keys():
    current = CycleSettings(last_transition={"from": "DRAFT", "to": "PLANNING"},
                            transition_history=[{"from": "DRAFT", "to": "PLANNING"}])

    merged = current.with_overrides({"transitionHistory": [], "monitorHistory": [], "approvalChain": ["ADMIN"]})

    assert merged.transition_history == [{"from": "DRAFT", "to": "PLANNING"}]
    assert merged.monitor_history == []
    assert merged.approval_chain == ["ADMIN"]
