"""
Approval Blueprint — sequential release sign-off.

Routes:
  POST   /approvals/workflows                   – start { entity_type, entity_id, steps?, definition_key? }
                                                   ("release" is reserved for the lifecycle)
  GET    /approvals/workflows/<wid>             – workflow with its action log
  POST   /approvals/workflows/<wid>/actions     – { step_order, action, comments? }
  POST   /approvals/workflows/<wid>/cancel      – cancel a PENDING workflow
  GET    /approvals/workflows/<wid>/verify      – stored state == replayed log?
  GET    /approvals/pending?role=               – approver inbox (defaults to caller's role)
  GET    /approvals/<entity_type>/<eid>/history – every workflow of an entity
  PUT    /approvals/roles/<actor>               – assign an actor's role { role } (ADMIN callers only)
"""

from flask import Blueprint, jsonify, request

from radiopharm.blueprints import current_actor, json_body, register_error_handlers
from radiopharm.core.exceptions import Unauthorized, ValidationError
from radiopharm.models.approval import ENTITY_KINDS, EntityRef
from radiopharm.services import approval_engine, fulfillment_service
from radiopharm.services.role_resolver import resolve_role, set_role

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1/approvals")
register_error_handlers(approval_bp)


def _entity_ref(entity_type, entity_id) -> EntityRef:
    if entity_type not in ENTITY_KINDS or not isinstance(entity_id, int):
        raise ValidationError(
            f"entity_type must be one of {list(ENTITY_KINDS)} and entity_id an integer",
            details={"entity_type": entity_type, "entity_id": entity_id},
        )
    if entity_type == "order":
        fulfillment_service.get_order(entity_id)
    else:
        fulfillment_service.get_batch(entity_id)
    return EntityRef(entity_type, entity_id)


@approval_bp.route("/workflows", methods=["POST"])
def start_workflow():
    data = json_body()
    ref = _entity_ref(data.get("entity_type"), data.get("entity_id"))
    steps = data.get("steps") or approval_engine.release_definition(ref.kind)
    workflow_id = approval_engine.start(
        ref,
        steps,
        definition_key=data.get("definition_key") or approval_engine.REVIEW_DEFINITION,
        actor=current_actor(),
    )
    return jsonify(approval_engine.get_workflow(workflow_id)), 201


@approval_bp.route("/workflows/<int:wid>", methods=["GET"])
def get_workflow(wid):
    return jsonify(approval_engine.get_workflow(wid))


@approval_bp.route("/workflows/<int:wid>/actions", methods=["POST"])
def record_action(wid):
    data = json_body()
    step_order = data.get("step_order")
    if not isinstance(step_order, int):
        raise ValidationError("step_order must be an integer", details={"step_order": step_order})
    result = approval_engine.record_action(
        wid, step_order, current_actor(), data.get("action"), data.get("comments"),
    )
    return jsonify(result), 200


@approval_bp.route("/workflows/<int:wid>/cancel", methods=["POST"])
def cancel_workflow(wid):
    return jsonify(approval_engine.cancel(wid, actor=current_actor()))


@approval_bp.route("/workflows/<int:wid>/verify", methods=["GET"])
def verify_workflow(wid):
    return jsonify({"workflow_id": wid, "consistent": approval_engine.verify_workflow(wid)})


@approval_bp.route("/pending", methods=["GET"])
def pending():
    role = request.args.get("role") or resolve_role(current_actor())
    if not role:
        raise ValidationError("role is required", details={"role": "required"})
    return jsonify(approval_engine.pending_for_role(role))


@approval_bp.route("/<entity_type>/<int:eid>/history", methods=["GET"])
def history(entity_type, eid):
    return jsonify(approval_engine.approval_history(_entity_ref(entity_type, eid)))


@approval_bp.route("/roles/<actor>", methods=["PUT"])
def assign_role(actor):
    caller = current_actor()
    caller_role = resolve_role(caller)
    if caller_role != "ADMIN":
        raise Unauthorized(caller, "ADMIN", caller_role)
    row = set_role(actor, json_body().get("role"))
    return jsonify(row.to_dict()), 200
