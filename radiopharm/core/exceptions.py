"""
Fulfillment-core exception hierarchy.

Every service in the fulfillment core raises one of these types. Blueprints
register handlers against them once (see ``radiopharm.blueprints``) and get
consistent HTTP status codes everywhere.

None of these errors is retried by the core. A caller that receives
ConcurrentModification may re-read and retry; everything else is final for
the given input.

Usage:
    from radiopharm.core.exceptions import GuardViolation, ValidationError

    raise ValidationError("half_life_minutes must be positive",
                          details={"half_life_minutes": 0})
    raise GuardViolation("order", 42, "QP_REVIEW", "RELEASED",
                         "release approval workflow is not APPROVED")
"""


class FulfillmentError(Exception):
    """Base class for all typed errors raised by the fulfillment core.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured payload for API responses.
    """

    code = "ERR_FULFILLMENT"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class NotFoundError(FulfillmentError):
    """Raised when a requested record does not exist.

    Args:
        resource: Human-readable model name (e.g. "Order", "ApprovalWorkflow").
        resource_id: The PK that was looked up.
    """

    code = "ERR_NOT_FOUND"

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg, {"resource": resource, "resource_id": resource_id})


class ValidationError(FulfillmentError):
    """Raised when input is malformed or out of range.

    Negative durations, non-positive activity, unknown units, reservations
    in the past, attempts to set derived fields.
    """

    code = "ERR_VALIDATION"


class GuardViolation(FulfillmentError):
    """Raised when a transition is not permitted.

    Covers both edges missing from the transition graph and guards that
    fail on a legal edge (workflow not approved, QC unresolved, ...).
    """

    code = "ERR_GUARD_VIOLATION"

    def __init__(
        self,
        entity_type: str,
        entity_id: int | str | None,
        from_status: str | None,
        to_status: str | None,
        reason: str,
        details: dict | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        payload = {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "from_status": from_status,
            "to_status": to_status,
        }
        payload.update(details or {})
        msg = f"Cannot move {entity_type} {entity_id} from {from_status} to {to_status}: {reason}"
        super().__init__(msg, payload)


class CapacityExceeded(FulfillmentError):
    """Raised when a reservation would exceed the daily capacity."""

    code = "ERR_CAPACITY_EXCEEDED"

    def __init__(self, day, requested: float, used: float, total: float) -> None:
        self.day = day
        self.requested = requested
        self.used = used
        self.total = total
        msg = (
            f"Capacity exceeded on {day}: {used:g} used + {requested:g} requested "
            f"> {total:g} available"
        )
        super().__init__(msg, {
            "date": str(day),
            "requested_minutes": requested,
            "used_minutes": used,
            "total_capacity_minutes": total,
        })


class WorkflowStepMismatch(FulfillmentError):
    """Raised when an approval action targets a step other than the current one."""

    code = "ERR_WORKFLOW_STEP_MISMATCH"

    def __init__(self, workflow_id: int, acting_step: int, current_step: int) -> None:
        self.workflow_id = workflow_id
        self.acting_step = acting_step
        self.current_step = current_step
        super().__init__(
            f"Workflow {workflow_id} is at step {current_step}, not {acting_step}",
            {"workflow_id": workflow_id, "acting_step": acting_step, "current_step": current_step},
        )


class Unauthorized(FulfillmentError):
    """Raised when the actor's role does not match the step's required role."""

    code = "ERR_UNAUTHORIZED"

    def __init__(self, actor: str, required_role: str, actual_role: str | None) -> None:
        self.actor = actor
        self.required_role = required_role
        self.actual_role = actual_role
        super().__init__(
            f"Actor {actor!r} (role={actual_role}) cannot act on a step requiring role {required_role}",
            {"actor": actor, "required_role": required_role, "actual_role": actual_role},
        )


class ConcurrentModification(FulfillmentError):
    """Raised when a record changed between read and write.

    Surfaced from SQLAlchemy's optimistic version check and from unique
    constraint collisions so the caller can re-read and retry.
    """

    code = "ERR_CONCURRENT_MODIFICATION"
