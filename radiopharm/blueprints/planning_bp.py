"""
Planning Blueprint — production requirement calculator.

Routes:
  POST /planning/production-requirement   – decay-corrected production plan

Body: { product_id, customer_id, requested_activity,
        reference_time | injection_time | delivery_window_start,
        buffer_minutes? }

Pure computation: nothing is written.
"""

from flask import Blueprint, current_app, jsonify

from radiopharm.blueprints import json_body, register_error_handlers
from radiopharm.core.exceptions import ValidationError
from radiopharm.services import catalog_service
from radiopharm.services.decay import compute_production_requirement
from radiopharm.utils.helpers import parse_datetime

planning_bp = Blueprint("planning_bp", __name__, url_prefix="/api/v1/planning")
register_error_handlers(planning_bp)


@planning_bp.route("/production-requirement", methods=["POST"])
def production_requirement():
    data = json_body()
    missing = [f for f in ("product_id", "customer_id", "requested_activity") if data.get(f) is None]
    if missing:
        raise ValidationError("Missing required fields", details={f: "required" for f in missing})

    raw_reference = (
        data.get("reference_time") or data.get("injection_time") or data.get("delivery_window_start")
    )
    reference = parse_datetime(raw_reference, "reference_time")
    try:
        requested = float(data["requested_activity"])
        buffer = float(data.get("buffer_minutes", current_app.config.get("DECAY_BUFFER_MINUTES", 0)))
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            "requested_activity and buffer_minutes must be numbers",
            details={"requested_activity": data.get("requested_activity"),
                     "buffer_minutes": data.get("buffer_minutes")},
        ) from exc

    plan = compute_production_requirement(
        requested,
        reference,
        catalog_service.get_product(data["product_id"]),
        catalog_service.get_customer(data["customer_id"]),
        buffer_minutes=buffer,
    )
    return jsonify(plan.to_dict()), 200
