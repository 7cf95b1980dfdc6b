"""
Radiopharmaceutical Fulfillment Core
Order domain model.

Lifecycle:
    DRAFT → SUBMITTED → VALIDATED → SCHEDULED → IN_PRODUCTION → QC_PENDING
    QC_PENDING → QC_PASSED | FAILED_QC
    QC_PASSED → QP_REVIEW → RELEASED → DISPATCHED → DELIVERED
    FAILED_QC → REWORK → IN_PRODUCTION
    any non-terminal → REJECTED
    any state before DISPATCHED → CANCELLED

Terminal: DELIVERED, CANCELLED, REJECTED.

calculated_production_activity and the planned_* schedule columns are
written only by the decay calculator (see services/fulfillment_service.py).
"""

from datetime import datetime, timezone

from radiopharm.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ORDER_STATUSES = {
    "DRAFT", "SUBMITTED", "VALIDATED", "SCHEDULED",
    "IN_PRODUCTION", "QC_PENDING", "QC_PASSED", "FAILED_QC",
    "REWORK", "QP_REVIEW", "RELEASED", "DISPATCHED",
    "DELIVERED", "CANCELLED", "REJECTED",
}

ORDER_TERMINAL_STATUSES = frozenset({"DELIVERED", "CANCELLED", "REJECTED"})

# Fields a caller may never supply; they are derived.
ORDER_DERIVED_FIELDS = frozenset({
    "calculated_production_activity",
    "planned_synthesis_start",
    "planned_qc_start",
    "planned_qc_end",
    "dispatch_deadline",
})

ORDER_TRANSITIONS = {
    "DRAFT":         ["SUBMITTED", "CANCELLED", "REJECTED"],
    "SUBMITTED":     ["VALIDATED", "CANCELLED", "REJECTED"],
    "VALIDATED":     ["SCHEDULED", "CANCELLED", "REJECTED"],
    "SCHEDULED":     ["IN_PRODUCTION", "CANCELLED", "REJECTED"],
    "IN_PRODUCTION": ["QC_PENDING", "CANCELLED", "REJECTED"],
    "QC_PENDING":    ["QC_PASSED", "FAILED_QC", "CANCELLED", "REJECTED"],
    "QC_PASSED":     ["QP_REVIEW", "CANCELLED", "REJECTED"],
    "FAILED_QC":     ["REWORK", "CANCELLED", "REJECTED"],
    "REWORK":        ["IN_PRODUCTION", "CANCELLED", "REJECTED"],
    "QP_REVIEW":     ["RELEASED", "CANCELLED", "REJECTED"],
    "RELEASED":      ["DISPATCHED", "CANCELLED", "REJECTED"],
    "DISPATCHED":    ["DELIVERED", "REJECTED"],
    "DELIVERED":     [],
    "CANCELLED":     [],
    "REJECTED":      [],
}


def validate_order_transition(old_status, new_status):
    """Return True if Order status transition is valid."""
    return new_status in ORDER_TRANSITIONS.get(old_status, [])


class Order(db.Model):
    """
    Customer order for a delivered activity of one product.

    One order references exactly one Product and one Customer and belongs
    to at most one Batch at a time.
    """

    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status", "status"),
        db.Index("ix_orders_batch", "batch_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    # Set from the id right after insert unless the caller supplies one
    order_number = db.Column(db.String(30), nullable=True, unique=True)

    product_id = db.Column(
        db.Integer, db.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False,
    )
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False,
    )
    batch_id = db.Column(
        db.Integer, db.ForeignKey("batches.id", ondelete="SET NULL"), nullable=True,
    )

    requested_activity = db.Column(db.Float, nullable=False)
    activity_unit = db.Column(db.String(10), nullable=False, default="mCi")
    delivery_window_start = db.Column(db.DateTime(timezone=True), nullable=False)
    delivery_window_end = db.Column(db.DateTime(timezone=True), nullable=True)
    injection_time = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="Overrides delivery_window_start as the decay reference point",
    )

    # Derived by the decay calculator, never user-settable
    calculated_production_activity = db.Column(db.Float, nullable=True)
    planned_synthesis_start = db.Column(db.DateTime(timezone=True), nullable=True)
    planned_qc_start = db.Column(db.DateTime(timezone=True), nullable=True)
    planned_qc_end = db.Column(db.DateTime(timezone=True), nullable=True)
    dispatch_deadline = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(20), nullable=False, default="DRAFT")
    notes = db.Column(db.Text, nullable=True)

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=True,
        onupdate=lambda: datetime.now(timezone.utc),
    )

    product = db.relationship("Product")
    customer = db.relationship("Customer")
    batch = db.relationship("Batch", back_populates="orders")

    __mapper_args__ = {"version_id_col": version}

    @property
    def reference_time(self):
        """Decay reference point: injection time when given, else window start."""
        return self.injection_time or self.delivery_window_start

    @property
    def is_terminal(self) -> bool:
        return self.status in ORDER_TERMINAL_STATUSES

    def to_dict(self) -> dict:
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "order_number": self.order_number,
            "product_id": self.product_id,
            "customer_id": self.customer_id,
            "batch_id": self.batch_id,
            "requested_activity": self.requested_activity,
            "activity_unit": self.activity_unit,
            "delivery_window_start": _iso(self.delivery_window_start),
            "delivery_window_end": _iso(self.delivery_window_end),
            "injection_time": _iso(self.injection_time),
            "calculated_production_activity": self.calculated_production_activity,
            "planned_synthesis_start": _iso(self.planned_synthesis_start),
            "planned_qc_start": _iso(self.planned_qc_start),
            "planned_qc_end": _iso(self.planned_qc_end),
            "dispatch_deadline": _iso(self.dispatch_deadline),
            "status": self.status,
            "notes": self.notes,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Order {self.order_number} [{self.status}]>"
