"""Standardised API error responses.

Usage
-----
    from caseflow.utils.errors import api_error, E

    return api_error(E.VALIDATION_REQUIRED, "transition_code is required")

Service exceptions are translated once, app-wide, by
``register_error_handlers(app)``.
"""

from __future__ import annotations

import logging

from flask import jsonify

from caseflow.core.exceptions import (
    ClockStateError,
    ConflictError,
    ConflictOfInterestError,
    ForbiddenError,
    GuardFailedError,
    InvalidOverrideError,
    InvalidTransitionError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • COI_  prefix for conflict-of-interest gate outcomes
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Auth – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    CLOCK_STATE = "ERR_CLOCK_STATE"

    # Preconditions – HTTP 412 / 422
    GUARD_FAILED = "ERR_GUARD_FAILED"
    INVALID_OVERRIDE = "ERR_INVALID_OVERRIDE"

    # COI gate – HTTP 403
    COI_HARD_BLOCK = "COI_HARD_BLOCK"
    COI_OVERRIDE_AVAILABLE = "COI_OVERRIDE_AVAILABLE"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.INVALID_TRANSITION: 409,
    E.CLOCK_STATE: 409,
    E.GUARD_FAILED: 412,
    E.INVALID_OVERRIDE: 422,
    E.COI_HARD_BLOCK: 403,
    E.COI_OVERRIDE_AVAILABLE: 403,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (conflict report, allowed roles, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(app) -> None:
    """Map the service exception hierarchy to HTTP responses, app-wide."""

    @app.errorhandler(NotFoundError)
    def _not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @app.errorhandler(ValidationError)
    def _validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @app.errorhandler(ConflictError)
    def _duplicate(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @app.errorhandler(InvalidTransitionError)
    def _invalid_transition(error: InvalidTransitionError):
        return api_error(E.INVALID_TRANSITION, str(error), details=error.details)

    @app.errorhandler(ForbiddenError)
    def _forbidden(error: ForbiddenError):
        return api_error(E.FORBIDDEN, str(error), details=error.details)

    @app.errorhandler(ConflictOfInterestError)
    def _coi(error: ConflictOfInterestError):
        code = E.COI_OVERRIDE_AVAILABLE if error.overridable else E.COI_HARD_BLOCK
        return api_error(code, str(error), details=error.details)

    @app.errorhandler(GuardFailedError)
    def _guard(error: GuardFailedError):
        return api_error(E.GUARD_FAILED, str(error), details=error.details)

    @app.errorhandler(StateConflictError)
    def _state_conflict(error: StateConflictError):
        return api_error(E.CONFLICT_STATE, str(error), details=error.details)

    @app.errorhandler(InvalidOverrideError)
    def _invalid_override(error: InvalidOverrideError):
        return api_error(E.INVALID_OVERRIDE, str(error), details=error.details)

    @app.errorhandler(ClockStateError)
    def _clock_state(error: ClockStateError):
        return api_error(E.CLOCK_STATE, str(error), details=error.details)

    @app.errorhandler(404)
    def _route_not_found(e):
        return api_error(E.NOT_FOUND, "Not found")

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def _rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")
