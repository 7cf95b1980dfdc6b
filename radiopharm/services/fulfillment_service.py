"""
Fulfillment — Service Layer (orders, batches, lifecycle state machine).

Business logic for:
    - Number generation:    ORD-0001, B-0001
    - Order intake:         derived production plan, derived fields rejected
    - Batch assembly:       order assignment, target activity recompute
    - QC items:             add / resolve, gating batch release
    - Lifecycle:            attempt_transition for orders and batches, with
                            guards and side effects in one transaction
    - Journey:              audit timeline per order / batch

A batch is one production run and holds one capacity reservation for its
run window. The first order to reach SCHEDULED creates it, later orders
share it, and cancelling the batch cancels its live orders.

Every transition is all-or-nothing: the guard checks, the status write, the
capacity and approval side effects and the AuditEntry commit together or
not at all. Audit entries go to the event sink only after commit.

Lock order: entity keys (order/batch, together) → workflow → capacity days.
Secondary locks are held until the transaction commits.
"""

import logging
from contextlib import ExitStack
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_, select

from radiopharm.core.exceptions import (
    ConcurrentModification,
    GuardViolation,
    NotFoundError,
    ValidationError,
)
from radiopharm.models import db
from radiopharm.models.approval import ApprovalWorkflow, EntityRef
from radiopharm.models.audit import AuditEntry, write_audit
from radiopharm.models.batch import (
    BATCH_STATUSES,
    BATCH_TRANSITIONS,
    QC_ITEM_STATUSES,
    Batch,
    MaterialLot,
    QcItem,
    validate_batch_transition,
    validate_qc_item_transition,
)
from radiopharm.models.capacity import CapacityReservation
from radiopharm.models.catalog import ACTIVITY_UNITS, Customer, Product
from radiopharm.models.order import (
    ORDER_DERIVED_FIELDS,
    ORDER_STATUSES,
    ORDER_TERMINAL_STATUSES,
    ORDER_TRANSITIONS,
    Order,
    validate_order_transition,
)
from radiopharm.services import approval_engine, capacity_planner, event_sink
from radiopharm.services.concurrency import atomic, entity_lock
from radiopharm.services.decay import plan_for_order
from radiopharm.utils.helpers import as_utc, get_or_404, parse_datetime, utcnow

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("order", "batch")

# Orders that still contribute to their batch's target activity.
_LIVE_ORDER_EXCLUDED = frozenset({"CANCELLED", "REJECTED"})

# An order may join a batch only before it is scheduled.
_ASSIGNABLE_ORDER_STATUSES = frozenset({"DRAFT", "SUBMITTED", "VALIDATED"})

# Orders in these states do not keep their batch's capacity hold alive.
_UNSCHEDULED_ORDER_STATUSES = _ASSIGNABLE_ORDER_STATUSES | _LIVE_ORDER_EXCLUDED


# ── Code Generation ──────────────────────────────────────────────────────────


def generate_order_number(order_id: int) -> str:
    """Order number from the row id: ORD-0001, ORD-0002, ..."""
    return f"ORD-{order_id:04d}"


def generate_batch_number(batch_id: int) -> str:
    """Batch number from the row id: B-0001, B-0002, ..."""
    return f"B-{batch_id:04d}"


# ── Private helpers ──────────────────────────────────────────────────────────


def order_key(order_id) -> str:
    return f"order:{order_id}"


def batch_key(batch_id) -> str:
    return f"batch:{batch_id}"


def _buffer_minutes() -> float:
    return float(current_app.config.get("DECAY_BUFFER_MINUTES", 0))


def _apply_plan(order: Order):
    """Recompute and store the order's derived production plan."""
    plan = plan_for_order(order, buffer_minutes=_buffer_minutes())
    order.calculated_production_activity = plan.production_activity
    order.planned_synthesis_start = plan.synthesis_start_time
    order.planned_qc_start = plan.qc_start_time
    order.planned_qc_end = plan.qc_end_time
    order.dispatch_deadline = plan.dispatch_deadline
    return plan


def _recompute_batch_target(batch: Batch) -> float:
    batch.target_activity = sum(
        o.calculated_production_activity or 0
        for o in batch.orders
        if o.status not in _LIVE_ORDER_EXCLUDED
    )
    return batch.target_activity


def _positive_float(data: dict, field: str, errors: dict):
    raw = data.get(field)
    if raw is None:
        errors[field] = "required"
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        errors[field] = "must be a number"
        return None
    if value <= 0:
        errors[field] = "must be positive"
    return value


def _reject_derived_fields(data: dict) -> None:
    supplied = sorted(ORDER_DERIVED_FIELDS.intersection(data))
    if supplied:
        raise ValidationError(
            "Derived fields cannot be supplied; they are computed from the product and customer",
            details={field: "derived" for field in supplied},
        )


def _normalize_target(entity_type: str, target_status: str) -> str:
    target = (target_status or "").strip().upper()
    known = ORDER_STATUSES if entity_type == "order" else BATCH_STATUSES
    if target not in known:
        raise ValidationError(
            f"Unknown {entity_type} status {target_status!r}",
            details={"target_status": target_status},
        )
    return target


def _check_entity_type(entity_type: str) -> str:
    entity_type = (entity_type or "").strip().lower()
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(
            f"entity_type must be one of {list(ENTITY_TYPES)}",
            details={"entity_type": entity_type},
        )
    return entity_type


def _cancel_pending_workflows(locks: ExitStack, ref: EntityRef, actor: str, audit: list) -> None:
    for workflow in approval_engine.pending_workflows(ref):
        locks.enter_context(entity_lock(approval_engine.workflow_key(workflow.id)))
        approval_engine.cancel_in_session(workflow, actor=actor, audit=audit)


def _release_reservations(locks: ExitStack, reservations, actor: str, audit: list) -> list[int]:
    unique = list({r.id: r for r in reservations}.values())
    if not unique:
        return []
    locks.enter_context(entity_lock(*(capacity_planner.capacity_key(r.day) for r in unique)))
    for reservation in unique:
        capacity_planner.release_in_session(reservation, actor=actor, audit=audit)
    return [r.id for r in unique]


def _batch_run_window(batch: Batch):
    """[planned start, planned start + synthesis + QC) for one production run."""
    start = as_utc(batch.planned_start_time)
    product = batch.product
    run_minutes = float(product.synthesis_time_minutes) + float(product.qc_time_minutes)
    return start, start + timedelta(minutes=run_minutes)


def _hold_batch_capacity(locks: ExitStack, batch: Batch, actor: str, audit: list) -> dict:
    """Reserve the batch's run window once. Later orders share the same hold."""
    held = capacity_planner.active_reservations(batch_id=batch.id)
    if held:
        return {"reservation_ids": [r.id for r in held], "reservation_shared": True}

    start, end = _batch_run_window(batch)
    if end <= start:
        return {"reservation_ids": [], "reservation_shared": False}
    mode = "COMMITTED" if batch.status != "PLANNED" else "TENTATIVE"
    shares = capacity_planner.split_window(start, end)
    locks.enter_context(entity_lock(*(capacity_planner.capacity_key(day) for day, _ in shares)))
    reservations = capacity_planner.reserve_window_in_session(
        start, end, mode, batch_id=batch.id, actor=actor, audit=audit,
    )
    return {"reservation_ids": [r.id for r in reservations], "reservation_shared": False}


def _holds_batch_schedule(batch: Batch, excluding: Order) -> bool:
    return any(
        o.id != excluding.id and o.status not in _UNSCHEDULED_ORDER_STATUSES
        for o in batch.orders
    )


def _cancel_batch_orders(locks: ExitStack, batch: Batch, actor: str, audit: list) -> list[Order]:
    """Cancel every live order of a batch that is being cancelled.

    Order keys are taken after the batch key, matching the order in which
    order transitions acquire them.
    """
    live = [o for o in batch.orders if o.status not in ORDER_TERMINAL_STATUSES]
    if not live:
        return []
    locks.enter_context(entity_lock(*(order_key(o.id) for o in live)))
    for order in live:
        _cancel_pending_workflows(locks, EntityRef("order", order.id), actor, audit)

    for order in live:
        previous = order.status
        order.status = "CANCELLED" if validate_order_transition(previous, "CANCELLED") else "REJECTED"
        audit.append(write_audit(
            entity_type="order",
            entity_id=order.id,
            action="order.transition",
            actor=actor,
            from_status=previous,
            to_status=order.status,
            diff={"cause": "batch.cancelled", "batch_id": batch.id},
        ).to_dict())
        logger.info(
            "Order %s: %s → %s (batch %s cancelled)", order.id, previous, order.status, batch.id,
            extra={"event_type": "order.transition", "entity_type": "order",
                   "entity_id": order.id, "actor": actor},
        )
    return live


# ═════════════════════════════════════════════════════════════════════════════
# Orders
# ═════════════════════════════════════════════════════════════════════════════


def create_order(data: dict, *, actor: str = "system") -> Order:
    """Create a DRAFT order and derive its production plan.

    Raises:
        ValidationError: bad input, or any derived field supplied.
        NotFoundError: unknown product or customer.
    """
    _reject_derived_fields(data)

    errors: dict = {}
    requested = _positive_float(data, "requested_activity", errors)
    unit = data.get("activity_unit") or "mCi"
    if unit not in ACTIVITY_UNITS:
        errors["activity_unit"] = f"must be one of {sorted(ACTIVITY_UNITS)}"
    for field in ("product_id", "customer_id"):
        if not data.get(field):
            errors[field] = "required"
    if errors:
        raise ValidationError("Invalid order", details=errors)

    window_start = parse_datetime(data.get("delivery_window_start"), "delivery_window_start")
    window_end = parse_datetime(data.get("delivery_window_end"), "delivery_window_end", required=False)
    injection = parse_datetime(data.get("injection_time"), "injection_time", required=False)
    if window_end is not None and window_end < window_start:
        raise ValidationError(
            "delivery_window_end must not precede delivery_window_start",
            details={"delivery_window_end": data.get("delivery_window_end")},
        )

    product = get_or_404(Product, data["product_id"])
    customer = get_or_404(Customer, data["customer_id"])

    audit: list[dict] = []
    with atomic():
        order = Order(
            order_number=data.get("order_number"),
            product=product,
            customer=customer,
            requested_activity=requested,
            activity_unit=unit,
            delivery_window_start=window_start,
            delivery_window_end=window_end,
            injection_time=injection,
            notes=data.get("notes"),
            status="DRAFT",
        )
        plan = _apply_plan(order)
        db.session.add(order)
        db.session.flush()
        if not order.order_number:
            order.order_number = generate_order_number(order.id)
            db.session.flush()
        audit.append(write_audit(
            entity_type="order",
            entity_id=order.id,
            action="order.create",
            actor=actor,
            to_status="DRAFT",
            diff={"production_plan": plan.to_dict()},
        ).to_dict())

    logger.info(
        "Order created: %s (%.2f %s → %.2f at synthesis)",
        order.order_number, requested, unit, plan.production_activity,
        extra={"event_type": "order.create", "entity_type": "order",
               "entity_id": order.id, "actor": actor},
    )
    event_sink.publish(audit)
    return order


def get_order(order_id: int) -> Order:
    return get_or_404(Order, order_id)


def list_orders(status: str | None = None, batch_id: int | None = None) -> list[Order]:
    stmt = select(Order)
    if status:
        stmt = stmt.where(Order.status == status.upper())
    if batch_id is not None:
        stmt = stmt.where(Order.batch_id == batch_id)
    return list(db.session.execute(stmt.order_by(Order.id)).scalars().all())


# ═════════════════════════════════════════════════════════════════════════════
# Batches & QC items
# ═════════════════════════════════════════════════════════════════════════════


def create_batch(data: dict, *, actor: str = "system") -> Batch:
    errors: dict = {}
    if not data.get("product_id"):
        errors["product_id"] = "required"
    unit = data.get("activity_unit") or "mCi"
    if unit not in ACTIVITY_UNITS:
        errors["activity_unit"] = f"must be one of {sorted(ACTIVITY_UNITS)}"
    if errors:
        raise ValidationError("Invalid batch", details=errors)
    planned_start = parse_datetime(data.get("planned_start_time"), "planned_start_time")
    product = get_or_404(Product, data["product_id"])

    audit: list[dict] = []
    with atomic():
        batch = Batch(
            batch_number=data.get("batch_number"),
            product=product,
            target_activity=0,
            activity_unit=unit,
            planned_start_time=planned_start,
            notes=data.get("notes"),
            status="PLANNED",
        )
        db.session.add(batch)
        db.session.flush()
        if not batch.batch_number:
            batch.batch_number = generate_batch_number(batch.id)
            db.session.flush()
        audit.append(write_audit(
            entity_type="batch",
            entity_id=batch.id,
            action="batch.create",
            actor=actor,
            to_status="PLANNED",
            diff={"product_id": product.id, "planned_start_time": planned_start.isoformat()},
        ).to_dict())

    logger.info(
        "Batch created: %s", batch.batch_number,
        extra={"event_type": "batch.create", "entity_type": "batch",
               "entity_id": batch.id, "actor": actor},
    )
    event_sink.publish(audit)
    return batch


def get_batch(batch_id: int) -> Batch:
    return get_or_404(Batch, batch_id)


def list_batches(status: str | None = None) -> list[Batch]:
    stmt = select(Batch)
    if status:
        stmt = stmt.where(Batch.status == status.upper())
    return list(db.session.execute(stmt.order_by(Batch.planned_start_time, Batch.id)).scalars().all())


def assign_order_to_batch(batch_id: int, order_id: int, *, actor: str = "system") -> Batch:
    """Attach an order to a PLANNED batch of the same product.

    The batch's target activity becomes the sum of its live orders'
    production activities.
    """
    audit: list[dict] = []
    with entity_lock(batch_key(batch_id), order_key(order_id)), atomic():
        batch = db.session.get(Batch, batch_id, with_for_update=True)
        if batch is None:
            raise NotFoundError(resource="Batch", resource_id=batch_id)
        order = db.session.get(Order, order_id, with_for_update=True)
        if order is None:
            raise NotFoundError(resource="Order", resource_id=order_id)

        if batch.status != "PLANNED":
            raise GuardViolation(
                "batch", batch.id, batch.status, batch.status,
                "orders can only join a PLANNED batch",
            )
        if order.status not in _ASSIGNABLE_ORDER_STATUSES:
            raise GuardViolation(
                "order", order.id, order.status, order.status,
                "order is already scheduled or closed",
            )
        if order.batch_id is not None and order.batch_id != batch.id:
            raise GuardViolation(
                "order", order.id, order.status, order.status,
                f"order already belongs to batch {order.batch_id}",
            )
        if order.product_id != batch.product_id:
            raise ValidationError(
                "Order product does not match batch product",
                details={"order_product_id": order.product_id, "batch_product_id": batch.product_id},
            )
        if order.activity_unit != batch.activity_unit:
            raise ValidationError(
                "Order activity unit does not match batch unit",
                details={"order_unit": order.activity_unit, "batch_unit": batch.activity_unit},
            )

        order.batch = batch
        db.session.flush()
        target = _recompute_batch_target(batch)
        audit.append(write_audit(
            entity_type="order",
            entity_id=order.id,
            action="order.assign_batch",
            actor=actor,
            diff={"batch_id": batch.id, "batch_target_activity": target},
        ).to_dict())

    logger.info(
        "Order %s assigned to batch %s (target %.2f)", order_id, batch_id, target,
        extra={"event_type": "order.assign_batch", "entity_type": "order",
               "entity_id": order_id, "actor": actor},
    )
    event_sink.publish(audit)
    return batch


def add_qc_item(batch_id: int, data: dict, *, actor: str = "system") -> QcItem:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})

    audit: list[dict] = []
    with entity_lock(batch_key(batch_id)), atomic():
        batch = db.session.get(Batch, batch_id, with_for_update=True)
        if batch is None:
            raise NotFoundError(resource="Batch", resource_id=batch_id)
        if batch.is_terminal:
            raise GuardViolation(
                "batch", batch.id, batch.status, batch.status,
                "cannot add QC items to a closed batch",
            )
        item = QcItem(batch=batch, name=name, status="PENDING")
        db.session.add(item)
        db.session.flush()
        audit.append(write_audit(
            entity_type="qc_item",
            entity_id=item.id,
            action="qc_item.update",
            actor=actor,
            to_status="PENDING",
            diff={"batch_id": batch.id, "name": name},
        ).to_dict())

    event_sink.publish(audit)
    return item


def add_material_lot(batch_id: int, data: dict, *, actor: str = "system") -> MaterialLot:
    """Record a material lot consumed by a batch (genealogy only)."""
    errors: dict = {}
    lot_number = (data.get("lot_number") or "").strip()
    material_name = (data.get("material_name") or "").strip()
    if not lot_number:
        errors["lot_number"] = "required"
    if not material_name:
        errors["material_name"] = "required"
    quantity = data.get("quantity")
    if quantity is not None:
        try:
            quantity = float(quantity)
        except (TypeError, ValueError):
            errors["quantity"] = "must be a number"
    if errors:
        raise ValidationError("Invalid material lot", details=errors)

    audit: list[dict] = []
    with entity_lock(batch_key(batch_id)), atomic():
        batch = db.session.get(Batch, batch_id, with_for_update=True)
        if batch is None:
            raise NotFoundError(resource="Batch", resource_id=batch_id)
        if batch.is_terminal:
            raise GuardViolation(
                "batch", batch.id, batch.status, batch.status,
                "cannot record material lots on a closed batch",
            )
        lot = MaterialLot(
            batch=batch,
            lot_number=lot_number,
            material_name=material_name,
            quantity=quantity,
            unit=data.get("unit"),
        )
        db.session.add(lot)
        db.session.flush()
        audit.append(write_audit(
            entity_type="batch",
            entity_id=batch.id,
            action="batch.material_lot",
            actor=actor,
            diff={"lot_id": lot.id, "lot_number": lot_number, "material_name": material_name},
        ).to_dict())

    event_sink.publish(audit)
    return lot


def set_qc_item_status(
    item_id: int,
    status: str,
    *,
    result_value: str | None = None,
    actor: str = "system",
) -> QcItem:
    """Resolve a QC item: PENDING → PASSED | FAILED | QUARANTINE, QUARANTINE → PASSED | FAILED."""
    status = (status or "").strip().upper()
    if status not in QC_ITEM_STATUSES:
        raise ValidationError(
            f"status must be one of {sorted(QC_ITEM_STATUSES)}", details={"status": status},
        )
    item = get_or_404(QcItem, item_id)

    audit: list[dict] = []
    with entity_lock(batch_key(item.batch_id)), atomic():
        item = db.session.get(QcItem, item_id, with_for_update=True)
        batch = item.batch
        if batch.is_terminal:
            raise GuardViolation(
                "batch", batch.id, batch.status, batch.status,
                "QC results of a closed batch are frozen",
            )
        previous = item.status
        if not validate_qc_item_transition(previous, status):
            raise GuardViolation("qc_item", item.id, previous, status, "transition not allowed")

        item.status = status
        item.result_value = result_value if result_value is not None else item.result_value
        item.tested_by = actor
        item.tested_at = utcnow()
        db.session.flush()
        audit.append(write_audit(
            entity_type="qc_item",
            entity_id=item.id,
            action="qc_item.update",
            actor=actor,
            from_status=previous,
            to_status=status,
            diff={"batch_id": batch.id, "result_value": item.result_value},
        ).to_dict())

    logger.info(
        "QC item %s: %s → %s", item_id, previous, status,
        extra={"event_type": "qc_item.update", "entity_type": "qc_item",
               "entity_id": item_id, "actor": actor},
    )
    event_sink.publish(audit)
    return item


# ═════════════════════════════════════════════════════════════════════════════
# State machine
# ═════════════════════════════════════════════════════════════════════════════


def _guard_order(locks: ExitStack, order: Order, target: str, actor: str, audit: list) -> dict:
    """Run guards and side effects for an order transition. Returns audit diff extras."""
    ref = EntityRef("order", order.id)
    current = order.status
    batch = order.batch
    extra: dict = {}

    def _deny(reason: str, code: str, **details):
        raise GuardViolation("order", order.id, current, target, reason, {"code": code, **details})

    if target == "VALIDATED":
        plan = _apply_plan(order)
        if not plan.within_shelf_life:
            _deny(
                "qc + travel time exceeds the product shelf life",
                "ORDER_TIME_NOT_FEASIBLE",
                total_elapsed_minutes=plan.total_elapsed_minutes,
                shelf_life_minutes=order.product.shelf_life_minutes,
            )
        extra["calculated_production_activity"] = plan.production_activity

    elif target == "SCHEDULED":
        if batch is None:
            _deny("order is not assigned to a batch", "ORDER_NOT_BATCHED")
        if batch.is_terminal:
            _deny(f"batch {batch.id} is {batch.status}", "BATCH_CLOSED")
        if order.planned_synthesis_start is None or order.planned_qc_end is None:
            _apply_plan(order)
        extra.update(_hold_batch_capacity(locks, batch, actor, audit))

    elif target == "QC_PASSED":
        if batch is None or batch.status not in ("QC_PASSED", "RELEASED"):
            _deny(
                "batch has not passed QC", "BATCH_NOT_QC_PASSED",
                batch_status=batch.status if batch else None,
            )

    elif target == "QP_REVIEW":
        workflow, _ = approval_engine.start_release_in_session(ref, actor=actor, audit=audit)
        extra["workflow_id"] = workflow.id

    elif target == "RELEASED":
        if not approval_engine.is_entity_approved(ref):
            _deny("release approval workflow is not APPROVED", "WORKFLOW_NOT_APPROVED")

    elif target == "DISPATCHED":
        if batch is None or batch.status != "RELEASED":
            _deny(
                "batch is not released", "BATCH_NOT_RELEASED",
                batch_status=batch.status if batch else None,
            )

    elif target in ("CANCELLED", "REJECTED"):
        _cancel_pending_workflows(locks, ref, actor, audit)
        holds = capacity_planner.active_reservations(order_id=order.id)
        # The batch's run is only freed before production starts.
        if batch is not None and batch.status == "PLANNED" and not _holds_batch_schedule(batch, order):
            holds += capacity_planner.active_reservations(batch_id=batch.id)
        released = _release_reservations(locks, holds, actor, audit)
        if released:
            extra["released_reservation_ids"] = released

    return extra


def _guard_batch(locks: ExitStack, batch: Batch, target: str, actor: str, audit: list) -> dict:
    """Run guards and side effects for a batch transition. Returns audit diff extras."""
    ref = EntityRef("batch", batch.id)
    current = batch.status
    extra: dict = {}

    def _deny(reason: str, code: str, **details):
        raise GuardViolation("batch", batch.id, current, target, reason, {"code": code, **details})

    if target == "IN_PROGRESS":
        tentative = [
            r for r in capacity_planner.active_reservations(batch_id=batch.id)
            if r.status == "TENTATIVE"
        ]
        if tentative:
            locks.enter_context(entity_lock(*(capacity_planner.capacity_key(r.day) for r in tentative)))
        for reservation in tentative:
            capacity_planner.commit_in_session(reservation, actor=actor, audit=audit)
        batch.actual_start_time = utcnow()
        extra["committed_reservation_ids"] = [r.id for r in tentative]

    elif target == "COMPLETED":
        batch.actual_end_time = utcnow()

    elif target == "QC_PASSED":
        unresolved = batch.unresolved_qc_items()
        if unresolved:
            _deny("QC items unresolved", "QC_UNRESOLVED", qc_item_ids=[q.id for q in unresolved])
        failed = batch.failed_qc_items()
        if failed:
            _deny("QC items failed", "QC_FAILED", qc_item_ids=[q.id for q in failed])
        workflow, _ = approval_engine.start_release_in_session(ref, actor=actor, audit=audit)
        extra["workflow_id"] = workflow.id

    elif target == "RELEASED":
        if not approval_engine.is_entity_approved(ref):
            _deny("release approval workflow is not APPROVED", "WORKFLOW_NOT_APPROVED")
        unresolved = batch.unresolved_qc_items()
        if unresolved:
            _deny("QC items unresolved", "QC_UNRESOLVED", qc_item_ids=[q.id for q in unresolved])

    elif target == "CANCELLED":
        orders = _cancel_batch_orders(locks, batch, actor, audit)
        _cancel_pending_workflows(locks, ref, actor, audit)
        holds = capacity_planner.active_reservations(batch_id=batch.id)
        for order in orders:
            holds += capacity_planner.active_reservations(order_id=order.id)
        _release_reservations(locks, holds, actor, audit)
        extra["cancelled_order_ids"] = [o.id for o in orders]

    return extra


def attempt_transition(entity_type: str, entity_id: int, target_status: str, actor: str = "system") -> str:
    """Move an order or batch to *target_status*.

    Returns:
        The new status.

    Raises:
        GuardViolation: the edge is not in the graph or a guard failed.
        ValidationError: unknown entity type or status.
        NotFoundError: no such entity.
        ConcurrentModification: the row changed underneath this request.
    """
    entity_type = _check_entity_type(entity_type)
    target = _normalize_target(entity_type, target_status)
    model = Order if entity_type == "order" else Batch

    # Orders read their batch in guards, so both keys are held.
    keys = [f"{entity_type}:{entity_id}"]
    expected_batch_id = None
    if entity_type == "order":
        expected_batch_id = get_or_404(Order, entity_id).batch_id
        if expected_batch_id is not None:
            keys.append(batch_key(expected_batch_id))

    audit: list[dict] = []
    with ExitStack() as locks:
        locks.enter_context(entity_lock(*keys))
        with atomic():
            entity = db.session.get(model, entity_id, with_for_update=True)
            if entity is None:
                raise NotFoundError(resource=model.__name__, resource_id=entity_id)
            if entity_type == "order" and entity.batch_id != expected_batch_id:
                raise ConcurrentModification(
                    "Order batch changed while the transition was being prepared; retry",
                    details={"order_id": entity_id},
                )

            current = entity.status
            validate = validate_order_transition if entity_type == "order" else validate_batch_transition
            if not validate(current, target):
                graph = ORDER_TRANSITIONS if entity_type == "order" else BATCH_TRANSITIONS
                raise GuardViolation(
                    entity_type, entity_id, current, target, "transition not allowed",
                    {"code": "ILLEGAL_TRANSITION", "allowed": graph.get(current, [])},
                )

            guard = _guard_order if entity_type == "order" else _guard_batch
            extra = guard(locks, entity, target, actor, audit)

            entity.status = target
            if entity_type == "order" and target in _LIVE_ORDER_EXCLUDED and entity.batch is not None \
                    and not entity.batch.is_terminal:
                db.session.flush()
                extra["batch_target_activity"] = _recompute_batch_target(entity.batch)
            db.session.flush()

            audit.append(write_audit(
                entity_type=entity_type,
                entity_id=entity_id,
                action=f"{entity_type}.transition",
                actor=actor,
                from_status=current,
                to_status=target,
                diff=extra,
            ).to_dict())

    logger.info(
        "%s %s: %s → %s", entity_type.capitalize(), entity_id, current, target,
        extra={"event_type": f"{entity_type}.transition", "entity_type": entity_type,
               "entity_id": entity_id, "actor": actor},
    )
    event_sink.publish(audit)
    return target


def allowed_transitions(entity_type: str, entity_id: int) -> dict:
    """Graph edges out of the entity's current status (guards not evaluated)."""
    entity_type = _check_entity_type(entity_type)
    model = Order if entity_type == "order" else Batch
    entity = get_or_404(model, entity_id)
    graph = ORDER_TRANSITIONS if entity_type == "order" else BATCH_TRANSITIONS
    return {
        "entity_type": entity_type,
        "entity_id": entity.id,
        "status": entity.status,
        "allowed": list(graph.get(entity.status, [])),
    }


def journey(entity_type: str, entity_id: int) -> list[dict]:
    """Audit timeline for an order or batch, oldest first.

    Includes the entity's own entries plus those of its approval workflows
    and capacity reservations (and, for batches, its QC items).
    """
    entity_type = _check_entity_type(entity_type)
    model = Order if entity_type == "order" else Batch
    entity = get_or_404(model, entity_id)

    workflow_ids = db.session.execute(
        select(ApprovalWorkflow.id).where(
            ApprovalWorkflow.entity_type == entity_type,
            ApprovalWorkflow.entity_id == str(entity.id),
        )
    ).scalars().all()
    if entity_type == "order":
        # An order's schedule is its batch's shared hold.
        owner = CapacityReservation.order_id == entity.id
        if entity.batch_id is not None:
            owner = owner | (CapacityReservation.batch_id == entity.batch_id)
    else:
        owner = CapacityReservation.batch_id == entity.id
    reservation_ids = db.session.execute(
        select(CapacityReservation.id).where(owner)
    ).scalars().all()

    clauses = [
        (AuditEntry.entity_type == entity_type) & (AuditEntry.entity_id == str(entity.id)),
    ]
    if workflow_ids:
        clauses.append(
            (AuditEntry.entity_type == "workflow")
            & AuditEntry.entity_id.in_([str(i) for i in workflow_ids])
        )
    if reservation_ids:
        clauses.append(
            (AuditEntry.entity_type == "capacity")
            & AuditEntry.entity_id.in_([str(i) for i in reservation_ids])
        )
    if entity_type == "batch" and entity.qc_items:
        clauses.append(
            (AuditEntry.entity_type == "qc_item")
            & AuditEntry.entity_id.in_([str(q.id) for q in entity.qc_items])
        )

    rows = db.session.execute(
        select(AuditEntry).where(or_(*clauses)).order_by(AuditEntry.id)
    ).scalars().all()
    return [r.to_dict() for r in rows]
