"""
Compensation Rules Engine

Evaluates a rule set against one employee snapshot and returns the decisions
it produced. This is the default ``rule_evaluator``; the policy-violation
monitor accepts any callable with the same signature.

Usage:
    from compcycle.services.rules_engine import evaluate_rules

    result = evaluate_rules(employee.to_snapshot(), rule_set)
    if result.blocked:
        ...

Evaluation order:
  1. Enabled rules sorted by priority (lower number first)
  2. Regular rules run first; conditions are ANDed
  3. A ``block`` action zeroes every amount and records a warning
  4. Cap / floor rules run last, and only when nothing blocked
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Enums & Data Classes
# ═════════════════════════════════════════════════════════════════════════════

class ActionType(str, Enum):
    SET_MERIT = "setMerit"
    SET_BONUS = "setBonus"
    SET_LTI = "setLTI"
    APPLY_MULTIPLIER = "applyMultiplier"
    APPLY_FLOOR = "applyFloor"
    APPLY_CAP = "applyCap"
    FLAG = "flag"
    BLOCK = "block"


_CAP_FLOOR = {ActionType.APPLY_CAP.value, ActionType.APPLY_FLOOR.value}
_TARGETS = ("merit", "bonus", "lti")


@dataclass
class AppliedAction:
    type: str
    params: dict
    calculated_value: float
    description: str

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "params": self.params,
            "calculated_value": self.calculated_value,
            "description": self.description,
        }


@dataclass
class RuleDecision:
    rule_id: str
    rule_name: str
    rule_type: str
    actions: list[AppliedAction] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "rule_type": self.rule_type,
            "actions": [a.to_dict() for a in self.actions],
        }


@dataclass
class RuleEvaluationResult:
    """Outcome of one rule set against one employee."""
    employee_id: str | None
    decisions: list[RuleDecision] = field(default_factory=list)
    applied_rules: list[str] = field(default_factory=list)
    skipped_rules: list[str] = field(default_factory=list)
    audit_trail: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    total_merit: float = 0.0
    total_bonus: float = 0.0
    total_lti: float = 0.0
    blocked: bool = False
    flags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "employee_id": self.employee_id,
            "decisions": [d.to_dict() for d in self.decisions],
            "applied_rules": self.applied_rules,
            "skipped_rules": self.skipped_rules,
            "audit_trail": self.audit_trail,
            "warnings": self.warnings,
            "total_merit": self.total_merit,
            "total_bonus": self.total_bonus,
            "total_lti": self.total_lti,
            "blocked": self.blocked,
            "flags": self.flags,
        }


RuleEvaluator = Callable[[dict, Any], RuleEvaluationResult]


# ═════════════════════════════════════════════════════════════════════════════
# Conditions
# ═════════════════════════════════════════════════════════════════════════════

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _between(actual, expected) -> bool:
    if not _is_number(actual) or not isinstance(expected, (list, tuple)) or len(expected) != 2:
        return False
    low, high = expected
    return _is_number(low) and _is_number(high) and low <= actual <= high


def _matches(actual, expected) -> bool:
    if not isinstance(actual, str) or not isinstance(expected, str):
        return False
    try:
        return re.search(expected, actual) is not None
    except re.error:
        return False


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, e: a == e,
    "neq": lambda a, e: a != e,
    "gt": lambda a, e: _is_number(a) and _is_number(e) and a > e,
    "gte": lambda a, e: _is_number(a) and _is_number(e) and a >= e,
    "lt": lambda a, e: _is_number(a) and _is_number(e) and a < e,
    "lte": lambda a, e: _is_number(a) and _is_number(e) and a <= e,
    "in": lambda a, e: isinstance(e, (list, tuple)) and a in e,
    "notIn": lambda a, e: isinstance(e, (list, tuple)) and a not in e,
    "between": _between,
    "contains": lambda a, e: isinstance(a, str) and isinstance(e, str) and e in a,
    "startsWith": lambda a, e: isinstance(a, str) and isinstance(e, str) and a.startswith(e),
    "matches": _matches,
}


def get_field_value(subject: dict, path: str):
    """Resolve a dot-notation path; missing segments yield None."""
    current: Any = subject
    for part in (path or "").split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def evaluate_condition(subject: dict, condition: dict) -> dict:
    actual = get_field_value(subject, condition.get("field", ""))
    operator = condition.get("operator")
    fn = OPERATORS.get(operator)
    passed = bool(fn(actual, condition.get("value"))) if fn else False
    if fn is None:
        logger.warning("Unknown rule operator %r treated as not matching", operator)
    return {
        "field": condition.get("field"),
        "operator": operator,
        "expected": condition.get("value"),
        "actual": actual,
        "passed": passed,
    }


def evaluate_all_conditions(subject: dict, conditions: list[dict]) -> tuple[bool, list[dict]]:
    """AND logic; an empty list always matches."""
    results = [evaluate_condition(subject, c) for c in conditions or []]
    return all(r["passed"] for r in results), results


# ═════════════════════════════════════════════════════════════════════════════
# Actions
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class _ActionOutcome:
    value: float
    description: str
    updates: dict = field(default_factory=dict)
    flag: str | None = None
    block: str | None = None


def _pct_or_amount(params: dict, base_salary: float, label: str, key: str) -> _ActionOutcome:
    percentage = params.get("percentage")
    fixed = params.get("amount")
    if fixed is not None:
        amount = float(fixed)
        description = f"Set {label} to fixed amount ${amount:,.2f}"
    else:
        amount = base_salary * float(percentage or 0) / 100
        description = f"Set {label} to {percentage or 0}% of base salary (${amount:,.2f})"
    return _ActionOutcome(amount, description, {key: amount})


def _execute_action(action: dict, subject: dict, amounts: dict) -> _ActionOutcome:
    kind = action.get("type")
    params = action.get("params") or {}
    base_salary = float(subject.get("base_salary") or 0)
    target = params.get("target", "merit")

    if kind == ActionType.SET_MERIT.value:
        percentage = float(params.get("percentage") or 0)
        amount = base_salary * percentage / 100
        return _ActionOutcome(
            amount, f"Set merit increase to {percentage:g}% of base salary (${amount:,.2f})",
            {"merit": amount},
        )
    if kind == ActionType.SET_BONUS.value:
        return _pct_or_amount(params, base_salary, "bonus", "bonus")
    if kind == ActionType.SET_LTI.value:
        return _pct_or_amount(params, base_salary, "LTI", "lti")

    if kind == ActionType.APPLY_MULTIPLIER.value:
        multiplier = float(params.get("multiplier", 1))
        before = amounts.get(target, 0.0)
        after = before * multiplier
        updates = {target: after} if target in _TARGETS else {}
        return _ActionOutcome(
            after, f"Applied {multiplier:g}x multiplier to {target} (${before:,.2f} to ${after:,.2f})",
            updates,
        )

    if kind == ActionType.APPLY_FLOOR.value:
        floor = float(params.get("amount", 0))
        before = amounts.get(target, 0.0)
        applied = max(before, floor)
        updates = {target: applied} if target in _TARGETS and before < floor else {}
        return _ActionOutcome(
            applied, f"Applied floor of ${floor:,.2f} to {target} (was ${before:,.2f}, now ${applied:,.2f})",
            updates,
        )

    if kind == ActionType.APPLY_CAP.value:
        cap = float(params["amount"]) if params.get("amount") is not None else math.inf
        before = amounts.get(target, 0.0)
        applied = min(before, cap)
        updates = {target: applied} if target in _TARGETS and before > cap else {}
        return _ActionOutcome(
            applied, f"Applied cap of ${cap:,.2f} to {target} (was ${before:,.2f}, now ${applied:,.2f})",
            updates,
        )

    if kind == ActionType.FLAG.value:
        message = str(params.get("message") or "Flagged for review")
        return _ActionOutcome(0.0, f"Flag: {message}", flag=message)

    if kind == ActionType.BLOCK.value:
        reason = str(params.get("reason") or "Blocked by rule")
        return _ActionOutcome(0.0, f"Block: {reason}", block=reason)

    logger.warning("Unknown rule action %r ignored", kind)
    return _ActionOutcome(0.0, f"Ignored unknown action {kind}")


# ═════════════════════════════════════════════════════════════════════════════
# Evaluator
# ═════════════════════════════════════════════════════════════════════════════

def _rules_of(rule_set) -> list[dict]:
    """Accept a RuleSet model or a plain {"rules": [...]} mapping."""
    rules = rule_set.get("rules", []) if isinstance(rule_set, dict) else rule_set.rules
    return [r if isinstance(r, dict) else r.to_dict() for r in rules or []]


def _run_rule(rule: dict, subject: dict, amounts: dict, result: RuleEvaluationResult,
              *, allow_block: bool) -> str | None:
    matched, condition_results = evaluate_all_conditions(subject, rule.get("conditions"))
    result.audit_trail.append({
        "rule_id": rule.get("id"),
        "rule_name": rule.get("name"),
        "matched": matched,
        "condition_results": condition_results,
    })
    if not matched:
        result.skipped_rules.append(rule.get("id"))
        return None

    result.applied_rules.append(rule.get("id"))
    decision = RuleDecision(rule.get("id"), rule.get("name"), rule.get("type", "CUSTOM"))
    block_reason = None
    for action in rule.get("actions") or []:
        outcome = _execute_action(action, subject, amounts)
        decision.actions.append(AppliedAction(
            type=action.get("type"),
            params=action.get("params") or {},
            calculated_value=outcome.value,
            description=outcome.description,
        ))
        amounts.update(outcome.updates)
        if outcome.flag:
            result.flags.append(outcome.flag)
        if outcome.block and allow_block:
            block_reason = outcome.block
    result.decisions.append(decision)
    return block_reason


def evaluate_rules(employee: dict, rule_set) -> RuleEvaluationResult:
    """Evaluate every rule in ``rule_set`` against an employee snapshot."""
    result = RuleEvaluationResult(employee_id=employee.get("id"))
    amounts = {"merit": 0.0, "bonus": 0.0, "lti": 0.0}

    regular: list[dict] = []
    cap_floor: list[dict] = []
    for rule in sorted(_rules_of(rule_set), key=lambda r: r.get("priority") or 0):
        if not rule.get("enabled", True):
            result.skipped_rules.append(rule.get("id"))
            continue
        kinds = {a.get("type") for a in rule.get("actions") or []}
        (cap_floor if kinds & _CAP_FLOOR else regular).append(rule)

    block_reason = None
    for rule in regular:
        reason = _run_rule(rule, employee, amounts, result, allow_block=True)
        if reason:
            block_reason = reason

    if block_reason:
        result.blocked = True
        amounts = {"merit": 0.0, "bonus": 0.0, "lti": 0.0}
        result.warnings.append(f"Employee blocked: {block_reason}")
    else:
        for rule in cap_floor:
            _run_rule(rule, employee, amounts, result, allow_block=False)

    result.total_merit = amounts["merit"]
    result.total_bonus = amounts["bonus"]
    result.total_lti = amounts["lti"]
    return result
