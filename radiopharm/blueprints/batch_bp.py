"""
Batch Blueprint — batches, order assignment and QC items.

Routes:
  GET    /batches                     – list batches (?status=)
  POST   /batches                     – create a PLANNED batch
  GET    /batches/<id>                – batch detail with orders and QC items
  POST   /batches/<id>/orders         – assign an order { order_id }
  POST   /batches/<id>/qc-items       – add a QC item { name }
  PUT    /qc-items/<id>               – resolve a QC item { status, result_value? }
  POST   /batches/<id>/material-lots  – record a consumed material lot
"""

from flask import Blueprint, jsonify, request

from radiopharm.blueprints import current_actor, json_body, register_error_handlers
from radiopharm.core.exceptions import ValidationError
from radiopharm.services import fulfillment_service

batch_bp = Blueprint("batch_bp", __name__, url_prefix="/api/v1")
register_error_handlers(batch_bp)


@batch_bp.route("/batches", methods=["GET"])
def list_batches():
    batches = fulfillment_service.list_batches(status=request.args.get("status"))
    return jsonify([b.to_dict() for b in batches])


@batch_bp.route("/batches", methods=["POST"])
def create_batch():
    batch = fulfillment_service.create_batch(json_body(), actor=current_actor())
    return jsonify(batch.to_dict()), 201


@batch_bp.route("/batches/<int:batch_id>", methods=["GET"])
def get_batch(batch_id):
    return jsonify(fulfillment_service.get_batch(batch_id).to_dict(include_children=True))


@batch_bp.route("/batches/<int:batch_id>/orders", methods=["POST"])
def assign_order(batch_id):
    order_id = json_body().get("order_id")
    if not isinstance(order_id, int):
        raise ValidationError("order_id is required", details={"order_id": "required"})
    batch = fulfillment_service.assign_order_to_batch(batch_id, order_id, actor=current_actor())
    return jsonify(batch.to_dict(include_children=True)), 200


@batch_bp.route("/batches/<int:batch_id>/qc-items", methods=["POST"])
def add_qc_item(batch_id):
    item = fulfillment_service.add_qc_item(batch_id, json_body(), actor=current_actor())
    return jsonify(item.to_dict()), 201


@batch_bp.route("/qc-items/<int:item_id>", methods=["PUT"])
def update_qc_item(item_id):
    data = json_body()
    item = fulfillment_service.set_qc_item_status(
        item_id,
        data.get("status"),
        result_value=data.get("result_value"),
        actor=current_actor(),
    )
    return jsonify(item.to_dict())


@batch_bp.route("/batches/<int:batch_id>/material-lots", methods=["POST"])
def add_material_lot(batch_id):
    lot = fulfillment_service.add_material_lot(batch_id, json_body(), actor=current_actor())
    return jsonify(lot.to_dict()), 201
