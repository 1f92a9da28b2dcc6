"""
Tenant-scoped query helpers.

Every get-by-id in the cycle engine goes through these helpers instead of
``db.session.get(Model, pk)``. Direct ``get`` calls bypass tenant isolation.

Usage:
    # TenantModel subclasses (CompCycle, Employee, RuleSet)
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)

    # Cycle children (CompRecommendation, CalibrationSession, CycleBudget)
    rec = get_scoped(CompRecommendation, rec_id, cycle_id=cycle.id)

    # When None is an acceptable outcome
    rec = get_scoped_or_none(CompRecommendation, rec_id, cycle_id=cycle.id)

Each keyword maps directly to a column on the model. A scope kwarg naming a
column the model lacks raises ValueError so the bug surfaces in tests rather
than as an unscoped lookup in production.
"""

import logging

from sqlalchemy import select

from compcycle.core.exceptions import NotFoundError
from compcycle.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk, *, tenant_id: int | None = None, cycle_id: str | None = None):
    """Fetch a single entity by PK with a mandatory scope filter.

    Cross-tenant access is indistinguishable from a missing record: both
    raise NotFoundError → HTTP 404.

    Raises:
        ValueError: No scope given, or a scope column missing on the model.
        NotFoundError: Entity absent or outside the given scope.
    """
    scopes = {
        field: value
        for field, value in (("tenant_id", tenant_id), ("cycle_id", cycle_id))
        if value is not None
    }
    if not scopes:
        raise ValueError(
            f"{model.__name__} id={pk} requires a scope filter (tenant_id or cycle_id)"
        )
    missing = [field for field in scopes if not hasattr(model, field)]
    if missing:
        raise ValueError(f"{model.__name__} has no scope column(s) {missing}")

    stmt = select(model).where(model.id == pk)
    for field, value in scopes.items():
        stmt = stmt.where(getattr(model, field) == value)

    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        logger.debug("get_scoped: %s id=%s not found in scope %s", model.__name__, pk, scopes)
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return result


def get_scoped_or_none(model, pk, *, tenant_id: int | None = None, cycle_id: str | None = None):
    """Same as get_scoped but returns None instead of raising NotFoundError."""
    try:
        return get_scoped(model, pk, tenant_id=tenant_id, cycle_id=cycle_id)
    except NotFoundError:
        return None
