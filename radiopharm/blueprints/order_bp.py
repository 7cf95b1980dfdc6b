"""
Order Blueprint.

Routes:
  GET    /orders                – list orders (?status=, ?batch_id=)
  POST   /orders                – create a DRAFT order with its derived plan
  GET    /orders/<id>           – order detail
"""

from flask import Blueprint, jsonify, request

from radiopharm.blueprints import current_actor, json_body, register_error_handlers
from radiopharm.services import fulfillment_service

order_bp = Blueprint("order_bp", __name__, url_prefix="/api/v1")
register_error_handlers(order_bp)


@order_bp.route("/orders", methods=["GET"])
def list_orders():
    orders = fulfillment_service.list_orders(
        status=request.args.get("status"),
        batch_id=request.args.get("batch_id", type=int),
    )
    return jsonify([o.to_dict() for o in orders])


@order_bp.route("/orders", methods=["POST"])
def create_order():
    order = fulfillment_service.create_order(json_body(), actor=current_actor())
    return jsonify(order.to_dict()), 201


@order_bp.route("/orders/<int:order_id>", methods=["GET"])
def get_order(order_id):
    return jsonify(fulfillment_service.get_order(order_id).to_dict())
