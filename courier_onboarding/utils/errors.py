"""Standardised API error responses.

Usage
-----
    from courier_onboarding.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Application not found")
    return api_error(E.VALIDATION_REQUIRED, "reviewer is required")
    return api_error(E.CONFLICT_STATE, "Cannot submit", details=exc.to_details())

Service exceptions are mapped once, in ``register_error_handlers``; views
let them propagate.
"""

from __future__ import annotations

import logging

from flask import jsonify, request

from courier_onboarding.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    IntegrationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
    """

    # Validation – HTTP 400 (malformed request) / 422 (business rule)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_VERSION = "ERR_CONFLICT_VERSION"

    # Upstream provider – HTTP 502
    INTEGRATION = "ERR_INTEGRATION"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_VERSION: 409,
    E.INTEGRATION: 502,
    E.DATABASE: 500,
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
        Extra structured payload (current/requested status, versions, etc.).

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


def register_error_handlers(app):
    """Map the engine's exception taxonomy onto HTTP responses."""

    @app.errorhandler(NotFoundError)
    def _not_found(exc):
        return api_error(E.NOT_FOUND, str(exc))

    @app.errorhandler(ValidationError)
    def _validation(exc):
        return api_error(E.VALIDATION_RULE, str(exc), details=exc.details)

    @app.errorhandler(ConflictError)
    def _conflict(exc):
        return api_error(E.CONFLICT_DUPLICATE, str(exc),
                         details={"field": exc.field, "value": exc.value})

    @app.errorhandler(InvalidTransitionError)
    def _invalid_transition(exc):
        return api_error(E.CONFLICT_STATE, str(exc), details=exc.to_details())

    @app.errorhandler(ConcurrentModificationError)
    def _concurrent(exc):
        return api_error(E.CONFLICT_VERSION, str(exc), details=exc.to_details())

    @app.errorhandler(IntegrationError)
    def _integration(exc):
        logger.warning("Provider failure surfaced to client: %s", exc,
                       extra={"provider": exc.provider, "entity_ref": exc.entity_ref})
        return api_error(E.INTEGRATION, f"{exc.provider} provider unavailable",
                         details=exc.to_details())

    @app.errorhandler(404)
    def _route_not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def _too_large(e):
        return api_error(E.VALIDATION_INVALID, "Request body too large", status=413)

    @app.errorhandler(429)
    def _rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")
