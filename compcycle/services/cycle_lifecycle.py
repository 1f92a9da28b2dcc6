"""
Compensation Cycle Lifecycle Service

Drives a cycle through DRAFT → PLANNING → ACTIVE → CALIBRATION → APPROVAL →
COMPLETED (or CANCELLED) with:
  - Transition validation against an immutable state machine
  - Role guards per (from, to) pair
  - Pre-transition invariants (budget set, recommendations present)
  - ``lastTransition`` merged into the cycle settings bag
  - Audit trail

Usage:
    from compcycle.services.cycle_lifecycle import transition

    cycle = transition(
        tenant_id=1,
        cycle_id="c0ffee...",
        target_status="ACTIVE",
        acting_role="HR_MANAGER",
        reason="Budget signed off",
    )
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Mapping

from compcycle.core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
)
from compcycle.models import db
from compcycle.models.audit import write_audit
from compcycle.models.auth import ROLE_ADMIN, ROLE_HR_MANAGER
from compcycle.models.cycle import CYCLE_STATUSES, CYCLE_TRANSITIONS, CompCycle
from compcycle.services.helpers.scoped_queries import get_scoped
from compcycle.utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionRule:
    """Guard attached to one (from, to) edge.

    ``roles`` of None means any role may take the edge. ``validator``
    returns an error message when the cycle does not meet the precondition.
    """

    roles: frozenset | None = None
    validator: Callable[[CompCycle], str | None] | None = None

    def permits(self, role: str | None) -> bool:
        return self.roles is None or role in self.roles


# ── Pre-transition invariants ────────────────────────────────────────────────

def _require_budget(cycle: CompCycle) -> str | None:
    if not cycle.budget_total or cycle.budget_total <= 0:
        return "Budget total must be set before activating the cycle"
    return None


def _require_recommendations_for_calibration(cycle: CompCycle) -> str | None:
    if cycle.recommendations.count() == 0:
        return "At least one recommendation must exist before calibration"
    return None


def _require_recommendations_for_completion(cycle: CompCycle) -> str | None:
    if cycle.recommendations.count() == 0:
        return "Cannot complete a cycle with no recommendations"
    return None


_ADMIN_OR_HR = frozenset({ROLE_ADMIN, ROLE_HR_MANAGER})
_ADMIN_ONLY = frozenset({ROLE_ADMIN})

_ROLE_GUARDS = {
    ("DRAFT", "PLANNING"): _ADMIN_OR_HR,
    ("PLANNING", "ACTIVE"): _ADMIN_OR_HR,
    ("ACTIVE", "CALIBRATION"): _ADMIN_OR_HR,
    ("CALIBRATION", "APPROVAL"): _ADMIN_OR_HR,
    ("DRAFT", "CANCELLED"): _ADMIN_OR_HR,
    ("APPROVAL", "COMPLETED"): _ADMIN_ONLY,
    ("PLANNING", "CANCELLED"): _ADMIN_ONLY,
    ("ACTIVE", "CANCELLED"): _ADMIN_ONLY,
    ("CALIBRATION", "CANCELLED"): _ADMIN_ONLY,
    ("APPROVAL", "CANCELLED"): _ADMIN_ONLY,
}

_VALIDATORS = {
    ("PLANNING", "ACTIVE"): _require_budget,
    ("ACTIVE", "CALIBRATION"): _require_recommendations_for_calibration,
    ("APPROVAL", "COMPLETED"): _require_recommendations_for_completion,
}


def _build_machine() -> Mapping[str, Mapping[str, TransitionRule]]:
    return MappingProxyType({
        source: MappingProxyType({
            target: TransitionRule(
                roles=_ROLE_GUARDS.get((source, target)),
                validator=_VALIDATORS.get((source, target)),
            )
            for target in targets
        })
        for source, targets in CYCLE_TRANSITIONS.items()
    })


# state -> {target -> TransitionRule}; read-only after import
CYCLE_MACHINE = _build_machine()


def get_allowed_transitions(status: str) -> list[str]:
    """Targets reachable from ``status`` in table order."""
    return list(CYCLE_MACHINE.get(status, {}))


def check_transition(cycle: CompCycle, target_status: str, acting_role: str | None) -> TransitionRule:
    """Validate a transition without applying it.

    Raises:
        InvalidTransitionError, ForbiddenError, InvalidStateError
    """
    edges = CYCLE_MACHINE.get(cycle.status, MappingProxyType({}))
    rule = edges.get(target_status)
    if rule is None:
        raise InvalidTransitionError(cycle.status, target_status, list(edges))

    if not rule.permits(acting_role):
        raise ForbiddenError(
            f"Role {acting_role} is not allowed to transition from {cycle.status} to {target_status}",
            role=acting_role,
        )

    if rule.validator is not None:
        problem = rule.validator(cycle)
        if problem:
            raise InvalidStateError(problem, details={"from": cycle.status, "to": target_status})
    return rule


def transition(
    tenant_id: int,
    cycle_id: str,
    target_status: str,
    acting_role: str | None,
    reason: str | None = None,
    *,
    acting_user_id: str | None = None,
) -> dict:
    """
    Execute a cycle lifecycle transition.

    Args:
        tenant_id: Owning tenant (scope for the cycle lookup)
        cycle_id: Cycle to move
        target_status: Requested status
        acting_role: Role of the caller, checked against the edge guard
        reason: Free-text reason stored in ``settings.lastTransition``
        acting_user_id: Recorded on the audit row

    Returns:
        Serialized cycle after the transition.

    Raises:
        NotFoundError, InvalidTransitionError, ForbiddenError, InvalidStateError
    """
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
    target_status = (target_status or "").upper()
    if target_status not in CYCLE_STATUSES:
        raise InvalidTransitionError(cycle.status, target_status, get_allowed_transitions(cycle.status))

    check_transition(cycle, target_status, acting_role)

    previous_status = cycle.status
    record = {
        "from": previous_status,
        "to": target_status,
        "reason": reason,
        "at": utcnow().isoformat(),
    }
    cycle.status = target_status
    cycle.store_settings(cycle.settings_bag.with_transition(record))

    try:
        write_audit(
            tenant_id=tenant_id,
            user_id=acting_user_id,
            action="CYCLE_TRANSITIONED",
            entity_type="comp_cycle",
            entity_id=cycle.id,
            changes={
                "status": {"old": previous_status, "new": target_status},
                "reason": reason,
                "role": acting_role,
            },
        )
    except Exception:
        logger.warning("Audit log failed for cycle transition, main flow unaffected", exc_info=True)

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Cycle transitioned %s -> %s",
        previous_status, target_status,
        extra={"tenant_id": tenant_id, "cycle_id": cycle.id, "user_id": acting_user_id},
    )
    return cycle.to_dict()
