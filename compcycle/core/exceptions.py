"""
Domain exceptions raised by the cycle services.

Blueprints map them to HTTP responses through
``compcycle.utils.errors.register_error_handlers``:

    NotFoundError           404
    ForbiddenError          403
    InvalidTransitionError  409
    InvalidStateError       422
    ValidationError         422

Per-item problems inside bulk operations are never raised; they are
returned in the result's ``errors`` list.
"""


class NotFoundError(Exception):
    """
    A row is missing from the caller's scope.

    Rows that belong to another tenant or cycle raise this too, so the
    response never reveals that they exist.
    """

    def __init__(self, resource: str, resource_id=None, tenant_id: int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        where = f" id={resource_id}" if resource_id is not None else ""
        scope = f" (tenant={tenant_id})" if tenant_id is not None else ""
        super().__init__(f"{resource}{where} not found{scope}")


class ValidationError(Exception):
    """Input is well-formed JSON but breaks a field or business rule."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class InvalidTransitionError(Exception):
    """The cycle status change is not an edge of the lifecycle table."""

    def __init__(self, current: str, target: str, allowed) -> None:
        self.current = current
        self.target = target
        self.allowed = list(allowed)
        targets = ", ".join(self.allowed) or "none (terminal state)"
        super().__init__(f"Cannot transition from {current} to {target}. Allowed: {targets}")


class ForbiddenError(Exception):
    """The acting role is not allowed to perform the operation."""

    def __init__(self, message: str, role: str | None = None) -> None:
        super().__init__(message)
        self.role = role


class InvalidStateError(Exception):
    """
    The target exists, but its current state rules out the operation.

    For example, activating a cycle with no budget, or editing a completed
    calibration session.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}
