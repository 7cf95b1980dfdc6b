"""Standardised API error responses.

Usage
-----
    from radiopharm.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Order not found")
    return api_error(E.VALIDATION_REQUIRED, "product_id is required")
    return api_error(E.GUARD_VIOLATION, "Cannot release", details={"code": "WORKFLOW_NOT_APPROVED"})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Domain exceptions carry their own ``code`` (see core/exceptions.py);
    the constants below cover those plus request-level failures.
    """

    # Validation – HTTP 422 (domain) / 400 (malformed request)
    VALIDATION = "ERR_VALIDATION"
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    BAD_REQUEST = "ERR_BAD_REQUEST"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    GUARD_VIOLATION = "ERR_GUARD_VIOLATION"
    CAPACITY_EXCEEDED = "ERR_CAPACITY_EXCEEDED"
    WORKFLOW_STEP_MISMATCH = "ERR_WORKFLOW_STEP_MISMATCH"
    CONCURRENT_MODIFICATION = "ERR_CONCURRENT_MODIFICATION"

    # Permissions – HTTP 403
    UNAUTHORIZED = "ERR_UNAUTHORIZED"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION: 422,
    E.VALIDATION_REQUIRED: 400,
    E.BAD_REQUEST: 400,
    E.NOT_FOUND: 404,
    E.GUARD_VIOLATION: 409,
    E.CAPACITY_EXCEEDED: 409,
    E.WORKFLOW_STEP_MISMATCH: 409,
    E.CONCURRENT_MODIFICATION: 409,
    E.UNAUTHORIZED: 403,
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
        Extra structured payload (guard reason code, capacity figures, etc.).

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
