"""JSON error bodies for the cycle API.

Every error response has the same shape::

    {"error": "<message>", "code": "ERR_...", "details": {...}}

``details`` is omitted when empty. Views return ``api_error(...)`` directly
for request-shape problems; domain exceptions raised by services are mapped by
``register_error_handlers``.
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from compcycle.core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)


class E:
    """Error codes, grouped by the HTTP status they default to."""

    # 400: malformed request
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    # 403
    FORBIDDEN = "ERR_FORBIDDEN"
    # 404, also used for rows owned by another tenant
    NOT_FOUND = "ERR_NOT_FOUND"
    # 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    # 422: well-formed but refused by a business rule
    BUSINESS_RULE = "ERR_BUSINESS_RULE"
    INVALID_STATE = "ERR_INVALID_STATE"
    # 500
    INTERNAL = "ERR_INTERNAL"


STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.BUSINESS_RULE: 422,
    E.INVALID_STATE: 422,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a Flask view.

    The status comes from ``STATUS_BY_CODE`` unless overridden; unknown codes
    fall back to 400.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or STATUS_BY_CODE.get(code, 400)


def register_error_handlers(bp) -> None:
    """Attach the domain-exception handlers to ``bp``.

    NotFoundError 404, InvalidTransitionError 409 (with the allowed targets),
    ForbiddenError 403, InvalidStateError and ValidationError 422. Anything
    else is logged and becomes a 500; werkzeug HTTP errors pass through to
    the app-level handlers.
    """
    logger = logging.getLogger(bp.import_name)

    @bp.errorhandler(NotFoundError)
    def _not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(InvalidTransitionError)
    def _invalid_transition(error: InvalidTransitionError):
        return api_error(E.CONFLICT_STATE, str(error), details={
            "current": error.current, "target": error.target, "allowed": error.allowed,
        })

    @bp.errorhandler(ForbiddenError)
    def _forbidden(error: ForbiddenError):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(InvalidStateError)
    def _invalid_state(error: InvalidStateError):
        return api_error(E.INVALID_STATE, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _business_rule(error: ValidationError):
        return api_error(E.BUSINESS_RULE, str(error), details=error.details)

    @bp.errorhandler(Exception)
    def _unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unhandled error in %s (endpoint=%s)", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
