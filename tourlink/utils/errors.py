"""Standardised API error responses.

Usage
-----
    from tourlink.utils.errors import api_error, error_from_exception, E

    return api_error(E.NOT_FOUND, "Task not found")
    return api_error(E.VALIDATION, "Invalid task data", details={"title": "required"})
    return error_from_exception(exc)   # any WorkflowError
"""

from __future__ import annotations

from flask import jsonify

from tourlink.core.exceptions import ConflictError, ValidationError, WorkflowError


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (mirror ``WorkflowError.code``)."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION = "ERR_VALIDATION"
    INVALID_RATING = "ERR_INVALID_RATING"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Permissions – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    DUPLICATE_APPLICATION = "ERR_DUPLICATE_APPLICATION"
    DUPLICATE_RATING = "ERR_DUPLICATE_RATING"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    NOT_ACCEPTING_APPLICATIONS = "ERR_NOT_ACCEPTING_APPLICATIONS"
    CONCURRENT_MODIFICATION = "ERR_CONCURRENT_MODIFICATION"

    # Server – HTTP 500 / 503
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION: 422,
    E.INVALID_RATING: 422,
    E.NOT_FOUND: 404,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.CONFLICT_DUPLICATE: 409,
    E.DUPLICATE_APPLICATION: 409,
    E.DUPLICATE_RATING: 409,
    E.INVALID_TRANSITION: 409,
    E.NOT_ACCEPTING_APPLICATIONS: 409,
    E.CONCURRENT_MODIFICATION: 409,
    E.DATABASE: 503,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """``(jsonify(envelope), status)``; status defaults from the code table, else 400."""
    http_status = status or _DEFAULT_STATUS.get(code, 400)
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details

    return jsonify(body), http_status


def error_from_exception(exc: WorkflowError):
    """Map a service-layer exception onto the standard envelope."""
    details = None
    if isinstance(exc, ValidationError):
        details = exc.details
    elif isinstance(exc, ConflictError):
        details = {"resource": exc.resource, "field": exc.field}
    elif hasattr(exc, "current_stage"):
        details = {"current_stage": exc.current_stage, "target_stage": exc.target_stage}

    body_code = exc.code
    status = _DEFAULT_STATUS.get(body_code, 400)
    response, status = api_error(body_code, str(exc), status=status, details=details)
    if getattr(exc, "retryable", False):
        response.headers["Retry-After"] = "1"
    return response, status
