"""
Transition Blueprint — order / batch lifecycle.

Routes:
  POST   /<order|batch>/<id>/transitions   – attempt { target_status }
  GET    /<order|batch>/<id>/transitions   – allowed next statuses
  GET    /<order|batch>/<id>/journey       – audit timeline
"""

from flask import Blueprint, jsonify

from radiopharm.blueprints import current_actor, json_body, register_error_handlers
from radiopharm.services import fulfillment_service

transition_bp = Blueprint("transition_bp", __name__, url_prefix="/api/v1")
register_error_handlers(transition_bp)

_ENTITY = "<any(order, batch):entity_type>/<int:entity_id>"


@transition_bp.route(f"/{_ENTITY}/transitions", methods=["POST"])
def attempt(entity_type, entity_id):
    data = json_body()
    new_status = fulfillment_service.attempt_transition(
        entity_type, entity_id, data.get("target_status"), actor=current_actor(),
    )
    return jsonify({"entity_type": entity_type, "entity_id": entity_id, "status": new_status}), 200


@transition_bp.route(f"/{_ENTITY}/transitions", methods=["GET"])
def allowed(entity_type, entity_id):
    return jsonify(fulfillment_service.allowed_transitions(entity_type, entity_id))


@transition_bp.route(f"/{_ENTITY}/journey", methods=["GET"])
def journey(entity_type, entity_id):
    return jsonify(fulfillment_service.journey(entity_type, entity_id))
