"""
Approval Workflow Engine — Service Layer.

Sequential multi-step sign-off (QC review, QP certification, ...) for any
EntityRef. The engine is generic: it never looks at the order or batch it
approves, only at the (kind, id) reference.

Business rules:
    - ``start`` is idempotent. While a PENDING instance exists for the
      entity its id is returned instead of creating a duplicate.
    - The ``release`` definition belongs to the order/batch lifecycle. Only
      ``start_release_in_session`` creates it, always with the configured
      steps, and ``is_entity_approved`` re-checks those steps.
    - ``acting_step_order`` must equal ``current_step``
      (WorkflowStepMismatch) and the actor's resolved role must equal the
      step's ``required_role`` (Unauthorized). Neither failure mutates
      anything.
    - APPROVE on the last step → APPROVED. APPROVE elsewhere advances
      current_step. REJECT at any step → REJECTED immediately.
    - Terminal workflows accept no further actions (GuardViolation).
    - Every action is appended to ApprovalAction. ``replay`` rebuilds
      (status, current_step) from that log alone; ``verify_workflow``
      checks the stored row against it.

Lock order: entity key, then ``workflow:<id>``, then capacity keys.
"""

import logging

from flask import current_app
from sqlalchemy import select

from radiopharm.core.exceptions import (
    GuardViolation,
    NotFoundError,
    Unauthorized,
    ValidationError,
    WorkflowStepMismatch,
)
from radiopharm.models import db
from radiopharm.models.approval import (
    APPROVER_ACTIONS,
    ApprovalAction,
    ApprovalStep,
    ApprovalWorkflow,
    EntityRef,
)
from radiopharm.models.audit import write_audit
from radiopharm.models.auth import KNOWN_ROLES
from radiopharm.services import event_sink
from radiopharm.services.concurrency import atomic, entity_lock
from radiopharm.services.role_resolver import resolve_role
from radiopharm.utils.helpers import utcnow

logger = logging.getLogger(__name__)

RELEASE_DEFINITION = "release"
REVIEW_DEFINITION = "review"


# ── Private helpers ──────────────────────────────────────────────────────────


def workflow_key(workflow_id: int) -> str:
    return f"workflow:{workflow_id}"


def _load_workflow(workflow_id: int, *, for_update: bool = False) -> ApprovalWorkflow:
    workflow = db.session.get(ApprovalWorkflow, workflow_id, with_for_update=for_update)
    if workflow is None:
        raise NotFoundError(resource="ApprovalWorkflow", resource_id=workflow_id)
    return workflow


def _normalize_steps(step_definitions) -> list[dict]:
    """Validate step definitions and return them ordered 1..N.

    Each definition is a dict with ``step_name`` (or ``name``) and
    ``required_role`` (or ``role``). ``step_order`` is optional; when
    omitted the list position is used.
    """
    if not step_definitions:
        raise ValidationError("At least one approval step is required")

    steps = []
    errors = {}
    for position, raw in enumerate(step_definitions, start=1):
        if not isinstance(raw, dict):
            errors[f"steps[{position}]"] = "must be an object"
            continue
        name = (raw.get("step_name") or raw.get("name") or "").strip()
        role = (raw.get("required_role") or raw.get("role") or "").strip().upper()
        order = raw.get("step_order", position)
        if not name:
            errors[f"steps[{position}].step_name"] = "required"
        if role not in KNOWN_ROLES:
            errors[f"steps[{position}].required_role"] = f"must be one of {sorted(KNOWN_ROLES)}"
        if not isinstance(order, int) or isinstance(order, bool):
            errors[f"steps[{position}].step_order"] = "must be an integer"
            continue
        steps.append({"step_order": order, "step_name": name, "required_role": role})

    if errors:
        raise ValidationError("Invalid approval step definitions", details=errors)

    steps.sort(key=lambda s: s["step_order"])
    if [s["step_order"] for s in steps] != list(range(1, len(steps) + 1)):
        raise ValidationError(
            "step_order values must be unique and contiguous from 1",
            details={"step_orders": [s["step_order"] for s in steps]},
        )
    return steps


def release_definition(kind: str) -> list[dict]:
    """Configured release approval steps for an entity kind."""
    definitions = current_app.config.get("APPROVAL_DEFINITIONS", {})
    if kind not in definitions:
        raise ValidationError(f"No approval definition for {kind!r}")
    return definitions[kind]


def _audit_action(workflow: ApprovalWorkflow, action: str, actor: str, from_status: str, diff: dict) -> dict:
    return write_audit(
        entity_type="workflow",
        entity_id=workflow.id,
        action=action,
        actor=actor,
        from_status=from_status,
        to_status=workflow.status,
        diff={
            "entity_type": workflow.entity_type,
            "entity_id": workflow.entity_id,
            "definition_key": workflow.definition_key,
            **diff,
        },
    ).to_dict()


# ── Pure replay ──────────────────────────────────────────────────────────────


def replay(step_count: int, actions) -> tuple[str, int]:
    """Derive (status, current_step) from an action log.

    Args:
        step_count: Number of steps in the workflow.
        actions: ApprovalAction rows (or dicts with an ``action`` key) in
            the order they were recorded.

    Raises:
        ValidationError: the log contains an action after a terminal one,
            or an unknown action.
    """
    status, current_step = "PENDING", 1
    for entry in actions:
        kind = entry["action"] if isinstance(entry, dict) else entry.action
        if status != "PENDING":
            raise ValidationError(
                f"Action {kind} recorded after terminal status {status}",
                details={"status": status, "action": kind},
            )
        if kind == "APPROVE":
            if current_step >= step_count:
                status = "APPROVED"
            else:
                current_step += 1
        elif kind == "REJECT":
            status = "REJECTED"
        elif kind == "CANCEL":
            status = "CANCELLED"
        else:
            raise ValidationError(f"Unknown approval action {kind!r}")
    return status, current_step


# ── Session-level operations (flush only) ────────────────────────────────────


def find_active_workflow(ref: EntityRef) -> ApprovalWorkflow | None:
    return db.session.execute(
        select(ApprovalWorkflow)
        .where(
            ApprovalWorkflow.entity_type == ref.kind,
            ApprovalWorkflow.entity_id == str(ref.id),
            ApprovalWorkflow.status == "PENDING",
        )
        .order_by(ApprovalWorkflow.id.desc())
    ).scalars().first()


def pending_workflows(ref: EntityRef) -> list[ApprovalWorkflow]:
    return list(db.session.execute(
        select(ApprovalWorkflow)
        .where(
            ApprovalWorkflow.entity_type == ref.kind,
            ApprovalWorkflow.entity_id == str(ref.id),
            ApprovalWorkflow.status == "PENDING",
        )
        .order_by(ApprovalWorkflow.id)
    ).scalars().all())


def _find_by_definition(ref: EntityRef, definition_key: str) -> ApprovalWorkflow | None:
    return db.session.execute(
        select(ApprovalWorkflow).where(
            ApprovalWorkflow.entity_type == ref.kind,
            ApprovalWorkflow.entity_id == str(ref.id),
            ApprovalWorkflow.definition_key == definition_key,
        )
    ).scalar_one_or_none()


def start_in_session(
    ref: EntityRef,
    step_definitions,
    *,
    definition_key: str = REVIEW_DEFINITION,
    actor: str = "system",
    audit: list | None = None,
) -> tuple[ApprovalWorkflow, bool]:
    """Create (or return the existing) workflow. Returns (workflow, created)."""
    steps = _normalize_steps(step_definitions)

    if definition_key == RELEASE_DEFINITION:
        existing = _find_by_definition(ref, definition_key)
    else:
        existing = find_active_workflow(ref) or _find_by_definition(ref, definition_key)
    if existing is not None:
        return existing, False

    workflow = ApprovalWorkflow(
        entity_type=ref.kind,
        entity_id=str(ref.id),
        definition_key=definition_key,
        current_step=1,
        status="PENDING",
        requested_by=actor or "system",
    )
    workflow.steps = [ApprovalStep(**s) for s in steps]
    db.session.add(workflow)
    db.session.flush()

    entry = _audit_action(
        workflow, "workflow.start", actor, None,
        {"steps": [s["step_name"] for s in steps]},
    )
    if audit is not None:
        audit.append(entry)
    logger.info(
        "Approval workflow %s started for %s (%d steps)", workflow.id, ref, len(steps),
        extra={"event_type": "workflow.start", "entity_type": ref.kind,
               "entity_id": ref.id, "actor": actor},
    )
    return workflow, True


def start_release_in_session(ref: EntityRef, *, actor: str = "system", audit: list | None = None):
    """Start (or return) the entity's release workflow with the configured steps."""
    return start_in_session(
        ref, release_definition(ref.kind),
        definition_key=RELEASE_DEFINITION, actor=actor, audit=audit,
    )


def cancel_in_session(workflow: ApprovalWorkflow, *, actor: str = "system", audit: list | None = None):
    """Append a CANCEL action and mark the workflow CANCELLED."""
    with entity_lock(workflow_key(workflow.id)):
        if workflow.is_terminal:
            raise GuardViolation(
                "workflow", workflow.id, workflow.status, "CANCELLED",
                "workflow is already terminal",
            )
        db.session.add(ApprovalAction(
            workflow_id=workflow.id,
            step_order=workflow.current_step,
            actor=actor or "system",
            actor_role=None,
            action="CANCEL",
        ))
        workflow.status = "CANCELLED"
        workflow.completed_at = utcnow()
        db.session.flush()

        entry = _audit_action(workflow, "workflow.cancel", actor, "PENDING", {"step_order": workflow.current_step})
    if audit is not None:
        audit.append(entry)
    logger.info(
        "Approval workflow %s cancelled", workflow.id,
        extra={"event_type": "workflow.cancel", "entity_type": workflow.entity_type,
               "entity_id": workflow.entity_id, "actor": actor},
    )
    return workflow


# ── Public API ───────────────────────────────────────────────────────────────


def start(
    ref: EntityRef,
    step_definitions,
    *,
    definition_key: str = REVIEW_DEFINITION,
    actor: str = "system",
) -> int:
    """Start an approval workflow for *ref*; returns the workflow id.

    Idempotent: an entity with an active workflow gets that workflow's id.

    Raises:
        ValidationError: *definition_key* is the lifecycle-owned release
            definition, or the step definitions are invalid.
    """
    definition_key = str(definition_key or REVIEW_DEFINITION).strip().lower()
    if definition_key == RELEASE_DEFINITION:
        raise ValidationError(
            "Release workflows are started by the order/batch lifecycle",
            details={"definition_key": definition_key},
        )
    audit: list[dict] = []
    with entity_lock(ref.key), atomic():
        workflow, _ = start_in_session(
            ref, step_definitions, definition_key=definition_key, actor=actor, audit=audit,
        )
        workflow_id = workflow.id
    event_sink.publish(audit)
    return workflow_id


def record_action(
    workflow_id: int,
    acting_step_order: int,
    actor: str,
    action: str,
    comments: str | None = None,
) -> dict:
    """Record APPROVE or REJECT on the workflow's current step.

    Returns:
        {"status": ..., "current_step": ...} after the action.

    Raises:
        GuardViolation: the workflow is already terminal.
        ValidationError: unknown action.
        WorkflowStepMismatch: acting_step_order != current_step.
        Unauthorized: the actor's role does not match the step.
    """
    action = (action or "").strip().upper()
    audit: list[dict] = []

    with entity_lock(workflow_key(workflow_id)), atomic():
        workflow = _load_workflow(workflow_id, for_update=True)

        if workflow.is_terminal:
            raise GuardViolation(
                "workflow", workflow.id, workflow.status, action or None,
                f"workflow is {workflow.status}",
            )
        if action not in APPROVER_ACTIONS:
            raise ValidationError(
                f"action must be one of {sorted(APPROVER_ACTIONS)}", details={"action": action},
            )
        if acting_step_order != workflow.current_step:
            raise WorkflowStepMismatch(workflow.id, acting_step_order, workflow.current_step)

        step = workflow.step(workflow.current_step)
        role = resolve_role(actor)
        if role != step.required_role:
            raise Unauthorized(actor, step.required_role, role)

        previous = workflow.status
        db.session.add(ApprovalAction(
            workflow_id=workflow.id,
            step_order=workflow.current_step,
            actor=actor,
            actor_role=role,
            action=action,
            comments=comments,
        ))

        if action == "REJECT":
            workflow.status = "REJECTED"
            workflow.completed_at = utcnow()
        elif workflow.current_step >= workflow.step_count:
            workflow.status = "APPROVED"
            workflow.completed_at = utcnow()
        else:
            workflow.current_step += 1
        db.session.flush()

        audit.append(_audit_action(
            workflow,
            "workflow.reject" if action == "REJECT" else "workflow.approve",
            actor,
            previous,
            {"step_order": step.step_order, "step_name": step.step_name, "comments": comments},
        ))
        result = {"status": workflow.status, "current_step": workflow.current_step}

    logger.info(
        "Workflow %s: %s by %s on step %s → %s",
        workflow_id, action, actor, acting_step_order, result["status"],
        extra={"event_type": f"workflow.{action.lower()}", "entity_type": "workflow",
               "entity_id": workflow_id, "actor": actor},
    )
    event_sink.publish(audit)
    return result


def cancel(workflow_id: int, *, actor: str = "system") -> dict:
    """Cancel a PENDING workflow directly."""
    audit: list[dict] = []
    with entity_lock(workflow_key(workflow_id)), atomic():
        workflow = cancel_in_session(
            _load_workflow(workflow_id, for_update=True), actor=actor, audit=audit,
        )
        result = {"status": workflow.status, "current_step": workflow.current_step}
    event_sink.publish(audit)
    return result


def verify_workflow(workflow_id: int) -> bool:
    """True when the stored status/current_step equal the replayed log."""
    workflow = _load_workflow(workflow_id)
    replayed = replay(workflow.step_count, workflow.actions)
    stored = (workflow.status, workflow.current_step)
    if replayed != stored:
        logger.error(
            "Workflow %s diverged from its action log: stored=%s replayed=%s",
            workflow_id, stored, replayed,
        )
        return False
    return True


def get_workflow(workflow_id: int) -> dict:
    return _load_workflow(workflow_id).to_dict(include_actions=True)


def get_active_workflow(ref: EntityRef) -> ApprovalWorkflow | None:
    return find_active_workflow(ref)


def _matches_definition(workflow: ApprovalWorkflow, step_definitions) -> bool:
    expected = [
        (s["step_order"], s["step_name"], s["required_role"])
        for s in _normalize_steps(step_definitions)
    ]
    return [(s.step_order, s.step_name, s.required_role) for s in workflow.steps] == expected


def is_entity_approved(ref: EntityRef, definition_key: str = RELEASE_DEFINITION) -> bool:
    """True when the entity's workflow for *definition_key* is APPROVED.

    A release workflow counts only if its steps are the configured release
    steps for the entity kind.
    """
    workflow = _find_by_definition(ref, definition_key)
    if workflow is None or workflow.status != "APPROVED":
        return False
    if definition_key == RELEASE_DEFINITION and not _matches_definition(
        workflow, release_definition(ref.kind)
    ):
        logger.warning(
            "Workflow %s for %s does not carry the configured release steps", workflow.id, ref,
            extra={"event_type": "workflow.definition_mismatch", "entity_type": ref.kind,
                   "entity_id": ref.id},
        )
        return False
    return True


def pending_for_role(role: str) -> list[dict]:
    """PENDING workflows whose current step waits on *role* (approver inbox)."""
    role = (role or "").strip().upper()
    rows = db.session.execute(
        select(ApprovalWorkflow)
        .join(
            ApprovalStep,
            (ApprovalStep.workflow_id == ApprovalWorkflow.id)
            & (ApprovalStep.step_order == ApprovalWorkflow.current_step),
        )
        .where(ApprovalWorkflow.status == "PENDING", ApprovalStep.required_role == role)
        .order_by(ApprovalWorkflow.created_at, ApprovalWorkflow.id)
    ).scalars().all()
    return [w.to_dict() for w in rows]


def approval_history(ref: EntityRef) -> list[dict]:
    """Every workflow for *ref*, oldest first, with its action log."""
    rows = db.session.execute(
        select(ApprovalWorkflow)
        .where(
            ApprovalWorkflow.entity_type == ref.kind,
            ApprovalWorkflow.entity_id == str(ref.id),
        )
        .order_by(ApprovalWorkflow.id)
    ).scalars().all()
    return [w.to_dict(include_actions=True) for w in rows]
