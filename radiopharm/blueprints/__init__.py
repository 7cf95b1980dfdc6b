"""
Radiopharmaceutical Fulfillment Core
Blueprint registry and shared request helpers.
"""

import logging

from flask import request
from werkzeug.exceptions import HTTPException

from radiopharm.core.exceptions import (
    CapacityExceeded,
    ConcurrentModification,
    FulfillmentError,
    GuardViolation,
    NotFoundError,
    Unauthorized,
    ValidationError,
    WorkflowStepMismatch,
)
from radiopharm.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Domain exception → HTTP status
_STATUS_BY_ERROR = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (GuardViolation, 409),
    (CapacityExceeded, 409),
    (WorkflowStepMismatch, 409),
    (ConcurrentModification, 409),
    (Unauthorized, 403),
)


def status_for(error: FulfillmentError) -> int:
    for exc_type, status in _STATUS_BY_ERROR:
        if isinstance(error, exc_type):
            return status
    return 400


def current_actor() -> str:
    """Caller identity from the X-User header (role is resolved per call)."""
    return (request.headers.get("X-User") or "").strip() or "anonymous"


def json_body() -> dict:
    """Request JSON object, or {} when the body is empty or not an object."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def register_error_handlers(bp):
    """Map fulfillment exceptions to JSON error responses on *bp*."""

    @bp.errorhandler(FulfillmentError)
    def _handle_fulfillment_error(error: FulfillmentError):
        logger.info(
            "%s on %s %s: %s", error.code, request.method, request.path, error,
            extra={"event_type": error.code, "actor": request.headers.get("X-User")},
        )
        return api_error(error.code, str(error), status=status_for(error), details=error.details)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    return bp
