"""
Rules engine tests: operators, actions and evaluation order.

These run against plain dicts; no database is needed.
"""

import pytest

from compcycle.services.rules_engine import (
    evaluate_all_conditions,
    evaluate_condition,
    evaluate_rules,
    get_field_value,
)

EMPLOYEE = {
    "id": "e-1",
    "department": "Engineering",
    "level": "L4",
    "location": "Berlin",
    "base_salary": 120000.0,
    "compa_ratio": 0.92,
    "performance_rating": 4,
    "meta": {"grade": {"band": "B2"}},
}


def _rule(actions, conditions=None, priority=0, name=None, **extra):
    return {"id": name or f"r-{priority}", "name": name or f"Rule {priority}", "priority": priority,
            "conditions": conditions or [], "actions": actions, **extra}


# ── Conditions ───────────────────────────────────────────────────────────────


@pytest.mark.parametrize("field,operator,value,expected", [
    ("department", "eq", "Engineering", True),
    ("department", "neq", "Engineering", False),
    ("base_salary", "gt", 100000, True),
    ("base_salary", "gte", 120000, True),
    ("compa_ratio", "lt", 0.9, False),
    ("performance_rating", "lte", 4, True),
    ("level", "in", ["L3", "L4"], True),
    ("level", "notIn", ["L3", "L4"], False),
    ("compa_ratio", "between", [0.8, 1.0], True),
    ("compa_ratio", "between", [0.8], False),
    ("location", "contains", "erl", True),
    ("location", "startsWith", "Ber", True),
    ("level", "matches", r"^L[45]$", True),
    ("level", "matches", "[unclosed", False),
    ("department", "gt", 5, False),
    ("meta.grade.band", "eq", "B2", True),
    ("meta.missing.band", "eq", None, True),
    ("department", "approximately", "Eng", False),
])
def test_operators(field, operator, value, expected):
    result = evaluate_condition(EMPLOYEE, {"field": field, "operator": operator, "value": value})
    assert result["passed"] is expected
    assert result["actual"] == get_field_value(EMPLOYEE, field)


def test_conditions_are_anded_and_empty_matches():
    ok, results = evaluate_all_conditions(EMPLOYEE, [
        {"field": "department", "operator": "eq", "value": "Engineering"},
        {"field": "level", "operator": "eq", "value": "L9"},
    ])
    assert ok is False
    assert [r["passed"] for r in results] == [True, False]
    assert evaluate_all_conditions(EMPLOYEE, []) == (True, [])


# ── Actions ──────────────────────────────────────────────────────────────────


def test_merit_bonus_lti_and_multiplier():
    result = evaluate_rules(EMPLOYEE, {"rules": [
        _rule([{"type": "setMerit", "params": {"percentage": 5}}], priority=1),
        _rule([{"type": "setBonus", "params": {"amount": 8000}},
               {"type": "setLTI", "params": {"percentage": 10}}], priority=2),
        _rule([{"type": "applyMultiplier", "params": {"multiplier": 1.5, "target": "bonus"}}], priority=3),
    ]})

    assert result.total_merit == 6000.0
    assert result.total_bonus == 12000.0
    assert result.total_lti == 12000.0
    assert result.applied_rules == ["r-1", "r-2", "r-3"]
    assert result.decisions[0].actions[0].description == (
        "Set merit increase to 5% of base salary ($6,000.00)"
    )


def test_cap_and_floor_bound_the_amount():
    capped = evaluate_rules(EMPLOYEE, {"rules": [
        _rule([{"type": "applyCap", "params": {"amount": 3000}}], priority=0),
        _rule([{"type": "setMerit", "params": {"percentage": 5}}], priority=9),
    ]})
    # Cap rules run after regular rules regardless of priority
    assert capped.total_merit == 3000.0
    assert capped.decisions[-1].actions[0].calculated_value == 3000.0

    floored = evaluate_rules(EMPLOYEE, {"rules": [
        _rule([{"type": "setMerit", "params": {"percentage": 1}}], priority=1),
        _rule([{"type": "applyFloor", "params": {"amount": 2500}}], priority=2),
    ]})
    assert floored.total_merit == 2500.0


def test_cap_reports_min_of_amount_and_cap():
    result = evaluate_rules(EMPLOYEE, {"rules": [
        _rule([{"type": "setMerit", "params": {"percentage": 2}}], priority=1),
        _rule([{"type": "applyCap", "params": {"amount": 5000}}], priority=2),
    ]})
    assert result.total_merit == 2400.0
    assert result.decisions[-1].actions[0].calculated_value == 2400.0


def test_flag_collects_message():
    result = evaluate_rules(EMPLOYEE, {"rules": [
        _rule([{"type": "flag", "params": {"message": "Check equity"}}]),
        _rule([{"type": "flag", "params": {}}], priority=1),
    ]})
    assert result.flags == ["Check equity", "Flagged for review"]
    assert result.blocked is False


# ── Blocking & ordering ──────────────────────────────────────────────────────


def test_block_zeroes_amounts_and_skips_caps():
    result = evaluate_rules(EMPLOYEE, {"rules": [
        _rule([{"type": "setMerit", "params": {"percentage": 5}}], priority=1),
        _rule([{"type": "block", "params": {"reason": "On PIP"}}], priority=2, name="pip"),
        _rule([{"type": "applyFloor", "params": {"amount": 1000}}], priority=3, name="floor"),
    ]})

    assert result.blocked is True
    assert result.total_merit == 0.0
    assert result.warnings == ["Employee blocked: On PIP"]
    assert "floor" not in result.applied_rules


def test_unmatched_and_disabled_rules_are_skipped():
    result = evaluate_rules(EMPLOYEE, {"rules": [
        _rule([{"type": "block", "params": {}}], name="sales-only",
              conditions=[{"field": "department", "operator": "eq", "value": "Sales"}]),
        _rule([{"type": "block", "params": {}}], name="off", enabled=False),
    ]})

    assert result.blocked is False
    assert set(result.skipped_rules) == {"sales-only", "off"}
    matched = {t["rule_name"]: t["matched"] for t in result.audit_trail}
    assert matched == {"sales-only": False}


def test_priority_orders_evaluation():
    result = evaluate_rules(EMPLOYEE, {"rules": [
        _rule([{"type": "setMerit", "params": {"percentage": 3}}], priority=5, name="late"),
        _rule([{"type": "setMerit", "params": {"percentage": 10}}], priority=1, name="early"),
    ]})
    assert result.applied_rules == ["early", "late"]
    assert result.total_merit == 3600.0


def test_rule_set_model_is_accepted(make_rule_set):
    rule_set = make_rule_set([
        {"name": "Merit", "actions": [{"type": "setMerit", "params": {"percentage": 4}}]},
    ])
    assert evaluate_rules(EMPLOYEE, rule_set).total_merit == 4800.0


def test_result_serialises():
    data = evaluate_rules(EMPLOYEE, {"rules": []}).to_dict()
    assert data["employee_id"] == "e-1"
    assert data["decisions"] == []
    assert data["blocked"] is False
