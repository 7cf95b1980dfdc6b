"""
Decay Calculator — production requirement and backward schedule.

Activity of a radioisotope decays exponentially:

    A(t) = A0 * 2 ** (-t / half_life)

The calculator inverts that over the minutes between end-of-synthesis and
the reference time (injection time, else delivery-window start) to find
the activity that must leave synthesis, then inflates it by the product's
overage to cover measurement and administration loss.

    total_elapsed      = qc_time + travel_time + buffer
    production_activity = requested * 2 ** (total_elapsed / half_life) * (1 + overage / 100)
    synthesis_start    = reference - (synthesis_time + qc_time + travel_time + buffer)
    qc_start           = synthesis_start + synthesis_time
    qc_end             = qc_start + qc_time
    dispatch_deadline  = reference - travel_time - buffer

All functions are pure. Nothing is rounded here; rounding is a display
concern. ``product`` and ``customer`` may be ORM rows or any object with
the same attribute names.

Usage:
    from radiopharm.services.decay import compute_production_requirement

    plan = compute_production_requirement(100, ref_time, product, customer)
    plan.production_activity   # ≈ 160.5 for F-18 (t½ 110), qc 20 + travel 40, overage 10%
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from radiopharm.core.exceptions import ValidationError
from radiopharm.utils.helpers import as_utc


@dataclass(frozen=True)
class ProductionPlan:
    """Result of a production-requirement computation."""

    requested_activity: float
    production_activity: float
    reference_time: datetime
    synthesis_start_time: datetime
    qc_start_time: datetime
    qc_end_time: datetime
    dispatch_deadline: datetime
    total_elapsed_minutes: float
    decay_factor: float
    within_shelf_life: bool

    def to_dict(self) -> dict:
        d = asdict(self)
        for key, value in d.items():
            if isinstance(value, datetime):
                d[key] = value.isoformat()
        return d


# ── Primitive decay maths ────────────────────────────────────────────────────


def _require_positive_half_life(half_life_minutes: float) -> None:
    if half_life_minutes is None or half_life_minutes <= 0:
        raise ValidationError(
            "half_life_minutes must be positive",
            details={"half_life_minutes": half_life_minutes},
        )


def decay_constant(half_life_minutes: float) -> float:
    """λ = ln 2 / t½, per minute."""
    _require_positive_half_life(half_life_minutes)
    return math.log(2) / half_life_minutes


def decay_factor(elapsed_minutes: float, half_life_minutes: float) -> float:
    """Multiplier 2 ** (t / t½) relating activity at two instants t apart."""
    _require_positive_half_life(half_life_minutes)
    return 2 ** (elapsed_minutes / half_life_minutes)


def decayed_activity(initial_activity: float, half_life_minutes: float, elapsed_minutes: float) -> float:
    """Activity remaining after *elapsed_minutes*."""
    return initial_activity / decay_factor(elapsed_minutes, half_life_minutes)


def required_initial_activity(target_activity: float, half_life_minutes: float, elapsed_minutes: float) -> float:
    """Activity needed now to have *target_activity* after *elapsed_minutes*."""
    return target_activity * decay_factor(elapsed_minutes, half_life_minutes)


def elapsed_minutes(start: datetime, end: datetime) -> float:
    """Fractional minutes from *start* to *end* (negative if end < start)."""
    return (end - start).total_seconds() / 60


def activity_at_time(
    initial_activity: float,
    calibration_time: datetime,
    target_time: datetime,
    half_life_minutes: float,
) -> float:
    """Activity at *target_time* of a source calibrated at *calibration_time*."""
    return decayed_activity(
        initial_activity, half_life_minutes, elapsed_minutes(calibration_time, target_time)
    )


def is_within_shelf_life(production_time: datetime, target_time: datetime, shelf_life_minutes: float) -> bool:
    """True when *target_time* falls inside [production_time, production_time + shelf life]."""
    elapsed = elapsed_minutes(production_time, target_time)
    return 0 <= elapsed <= shelf_life_minutes


# ── Production requirement ───────────────────────────────────────────────────


def _validate_inputs(requested_activity, product, customer, buffer_minutes) -> None:
    errors = {}
    if requested_activity is None or requested_activity <= 0:
        errors["requested_activity"] = "must be positive"
    if product.half_life_minutes is None or product.half_life_minutes <= 0:
        errors["half_life_minutes"] = "must be positive"
    if product.overage_percent is None or product.overage_percent < 0:
        errors["overage_percent"] = "must not be negative"
    for name, value in (
        ("synthesis_time_minutes", product.synthesis_time_minutes),
        ("qc_time_minutes", product.qc_time_minutes),
        ("travel_time_minutes", customer.travel_time_minutes),
        ("buffer_minutes", buffer_minutes),
    ):
        if value is None or value < 0:
            errors[name] = "must not be negative"
    if errors:
        raise ValidationError("Invalid production requirement input", details=errors)


def compute_production_requirement(
    requested_activity: float,
    reference_time: datetime,
    product,
    customer,
    buffer_minutes: float = 0,
) -> ProductionPlan:
    """Turn a requested delivered activity into a production plan.

    Args:
        requested_activity: Activity wanted at *reference_time* (any unit; the
            result is in the same unit).
        reference_time: Injection time, or delivery-window start.
        product: half_life_minutes, synthesis_time_minutes, qc_time_minutes,
            shelf_life_minutes, overage_percent.
        customer: travel_time_minutes.
        buffer_minutes: Extra slack between QC end and dispatch.

    Raises:
        ValidationError: non-positive activity or half-life, negative
            duration or overage.

    A reference time in the past is accepted (historical recompute).
    """
    _validate_inputs(requested_activity, product, customer, buffer_minutes)

    synthesis = float(product.synthesis_time_minutes)
    qc = float(product.qc_time_minutes)
    travel = float(customer.travel_time_minutes) + float(buffer_minutes)

    total_elapsed = qc + travel
    factor = decay_factor(total_elapsed, product.half_life_minutes)
    production_activity = requested_activity * factor * (1 + product.overage_percent / 100)

    synthesis_start = reference_time - timedelta(minutes=synthesis + qc + travel)
    qc_start = synthesis_start + timedelta(minutes=synthesis)
    qc_end = qc_start + timedelta(minutes=qc)
    dispatch_deadline = reference_time - timedelta(minutes=travel)

    shelf_life = product.shelf_life_minutes
    within_shelf_life = shelf_life is None or total_elapsed <= shelf_life

    return ProductionPlan(
        requested_activity=requested_activity,
        production_activity=production_activity,
        reference_time=reference_time,
        synthesis_start_time=synthesis_start,
        qc_start_time=qc_start,
        qc_end_time=qc_end,
        dispatch_deadline=dispatch_deadline,
        total_elapsed_minutes=total_elapsed,
        decay_factor=factor,
        within_shelf_life=within_shelf_life,
    )


def plan_for_order(order, buffer_minutes: float = 0) -> ProductionPlan:
    """Production plan for an Order row (reference = injection time, else window start)."""
    if order.reference_time is None:
        raise ValidationError(
            "Order has neither injection_time nor delivery_window_start",
            details={"order_id": order.id},
        )
    return compute_production_requirement(
        order.requested_activity,
        as_utc(order.reference_time),
        order.product,
        order.customer,
        buffer_minutes=buffer_minutes,
    )
