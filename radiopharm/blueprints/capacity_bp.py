"""
Capacity Blueprint — daily production-minute ledger.

Routes:
  POST   /capacity/reservations               – reserve { date, minutes } or
                                                { start, end, minutes? }; mode, override
  POST   /capacity/reservations/<id>/commit   – TENTATIVE → COMMITTED
  DELETE /capacity/reservations/<id>          – release
  GET    /capacity/calendar?start=&end=       – per-day snapshots
  GET    /capacity/<date>                     – one day's snapshot
  PUT    /capacity/<date>                     – set the day's total { total_capacity_minutes }
"""

from flask import Blueprint, jsonify, request

from radiopharm.blueprints import current_actor, json_body, register_error_handlers
from radiopharm.core.exceptions import ValidationError
from radiopharm.services import capacity_planner
from radiopharm.utils.helpers import parse_datetime

capacity_bp = Blueprint("capacity_bp", __name__, url_prefix="/api/v1/capacity")
register_error_handlers(capacity_bp)


def _minutes(value, required: bool):
    if value is None and not required:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("minutes must be a number", details={"minutes": value}) from exc


@capacity_bp.route("/reservations", methods=["POST"])
def create_reservation():
    data = json_body()
    common = {
        "batch_id": data.get("batch_id"),
        "order_id": data.get("order_id"),
        "override": bool(data.get("override", False)),
        "actor": current_actor(),
    }
    mode = data.get("mode", "TENTATIVE")

    if data.get("start") or data.get("end"):
        reservations = capacity_planner.reserve_window(
            parse_datetime(data.get("start"), "start"),
            parse_datetime(data.get("end"), "end"),
            mode,
            minutes=_minutes(data.get("minutes"), required=False),
            **common,
        )
        return jsonify([r.to_dict() for r in reservations]), 201

    if not data.get("date"):
        raise ValidationError("date or start/end is required", details={"date": "required"})
    reservation = capacity_planner.reserve(
        data["date"], _minutes(data.get("minutes"), required=True), mode, **common,
    )
    return jsonify(reservation.to_dict()), 201


@capacity_bp.route("/reservations/<int:reservation_id>/commit", methods=["POST"])
def commit_reservation(reservation_id):
    return jsonify(capacity_planner.commit(reservation_id, actor=current_actor()).to_dict())


@capacity_bp.route("/reservations/<int:reservation_id>", methods=["DELETE"])
def release_reservation(reservation_id):
    return jsonify(capacity_planner.release(reservation_id, actor=current_actor()).to_dict())


@capacity_bp.route("/calendar", methods=["GET"])
def calendar():
    start, end = request.args.get("start"), request.args.get("end")
    if not start or not end:
        raise ValidationError("start and end are required", details={"start": start, "end": end})
    return jsonify(capacity_planner.calendar(start, end))


@capacity_bp.route("/<day>", methods=["GET"])
def snapshot(day):
    return jsonify(capacity_planner.capacity_snapshot(day))


@capacity_bp.route("/<day>", methods=["PUT"])
def set_capacity(day):
    total = json_body().get("total_capacity_minutes")
    ledger = capacity_planner.set_daily_capacity(
        day, _minutes(total, required=True), actor=current_actor(),
    )
    return jsonify(ledger.to_dict())
