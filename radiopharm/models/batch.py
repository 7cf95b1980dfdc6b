"""
Radiopharmaceutical Fulfillment Core
Batch domain models.

Models:
    - Batch:        one production run aggregating the requirements of its orders
    - QcItem:       a quality-control test result attached to a batch
    - MaterialLot:  an incoming material lot consumed by a batch (genealogy only)

Lifecycle states:
    Batch:   PLANNED → IN_PROGRESS → COMPLETED → QC_PENDING → QC_PASSED | QC_FAILED
             QC_PASSED → RELEASED;  any non-terminal → CANCELLED
    QcItem:  PENDING → PASSED | FAILED | QUARANTINE  (QUARANTINE → PASSED | FAILED)
"""

from datetime import datetime, timezone

from radiopharm.models import db

# ── Constants ────────────────────────────────────────────────────────────────

BATCH_STATUSES = {
    "PLANNED", "IN_PROGRESS", "COMPLETED", "QC_PENDING",
    "QC_PASSED", "QC_FAILED", "RELEASED", "CANCELLED",
}

BATCH_TERMINAL_STATUSES = frozenset({"QC_FAILED", "RELEASED", "CANCELLED"})

BATCH_TRANSITIONS = {
    "PLANNED":     ["IN_PROGRESS", "CANCELLED"],
    "IN_PROGRESS": ["COMPLETED", "CANCELLED"],
    "COMPLETED":   ["QC_PENDING", "CANCELLED"],
    "QC_PENDING":  ["QC_PASSED", "QC_FAILED", "CANCELLED"],
    "QC_PASSED":   ["RELEASED", "CANCELLED"],
    "QC_FAILED":   [],
    "RELEASED":    [],
    "CANCELLED":   [],
}

QC_ITEM_STATUSES = {"PENDING", "PASSED", "FAILED", "QUARANTINE"}

# A QC item in one of these states blocks release.
QC_UNRESOLVED_STATUSES = frozenset({"PENDING", "QUARANTINE"})

QC_ITEM_TRANSITIONS = {
    "PENDING":    ["PASSED", "FAILED", "QUARANTINE"],
    "QUARANTINE": ["PASSED", "FAILED"],
    "PASSED":     [],
    "FAILED":     [],
}


def validate_batch_transition(old_status, new_status):
    """Return True if Batch status transition is valid."""
    return new_status in BATCH_TRANSITIONS.get(old_status, [])


def validate_qc_item_transition(old_status, new_status):
    """Return True if QcItem status transition is valid."""
    return new_status in QC_ITEM_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. Batch
# ═════════════════════════════════════════════════════════════════════════════


class Batch(db.Model):
    """
    Production batch for one product.

    target_activity is the sum of the calculated production activities of
    the batch's live orders and is recomputed whenever an order joins.
    """

    __tablename__ = "batches"
    __table_args__ = (
        db.Index("ix_batches_status", "status"),
        db.Index("ix_batches_planned_start", "planned_start_time"),
    )

    id = db.Column(db.Integer, primary_key=True)
    # Set from the id right after insert unless the caller supplies one
    batch_number = db.Column(db.String(30), nullable=True, unique=True)
    product_id = db.Column(
        db.Integer, db.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False,
    )

    target_activity = db.Column(db.Float, nullable=False, default=0)
    activity_unit = db.Column(db.String(10), nullable=False, default="mCi")
    planned_start_time = db.Column(db.DateTime(timezone=True), nullable=False)
    actual_start_time = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_end_time = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_activity = db.Column(db.Float, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="PLANNED")
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
    orders = db.relationship("Order", back_populates="batch", order_by="Order.id")
    qc_items = db.relationship(
        "QcItem", back_populates="batch", cascade="all, delete-orphan", order_by="QcItem.id",
    )
    material_lots = db.relationship(
        "MaterialLot", back_populates="batch", cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in BATCH_TERMINAL_STATUSES

    def unresolved_qc_items(self) -> list:
        return [q for q in self.qc_items if not q.is_resolved]

    def failed_qc_items(self) -> list:
        return [q for q in self.qc_items if q.status == "FAILED"]

    def to_dict(self, include_children: bool = False) -> dict:
        def _iso(value):
            return value.isoformat() if value else None

        d = {
            "id": self.id,
            "batch_number": self.batch_number,
            "product_id": self.product_id,
            "target_activity": self.target_activity,
            "activity_unit": self.activity_unit,
            "planned_start_time": _iso(self.planned_start_time),
            "actual_start_time": _iso(self.actual_start_time),
            "actual_end_time": _iso(self.actual_end_time),
            "actual_activity": self.actual_activity,
            "status": self.status,
            "notes": self.notes,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children:
            d["order_ids"] = [o.id for o in self.orders]
            d["qc_items"] = [q.to_dict() for q in self.qc_items]
            d["material_lots"] = [m.to_dict() for m in self.material_lots]
        return d

    def __repr__(self):
        return f"<Batch {self.batch_number} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. QcItem
# ═════════════════════════════════════════════════════════════════════════════


class QcItem(db.Model):
    """Quality-control test result (appearance, pH, radiochemical purity, ...)."""

    __tablename__ = "qc_items"

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(
        db.Integer, db.ForeignKey("batches.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(120), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    result_value = db.Column(db.String(120), nullable=True)
    tested_by = db.Column(db.String(150), nullable=True)
    tested_at = db.Column(db.DateTime(timezone=True), nullable=True)

    batch = db.relationship("Batch", back_populates="qc_items")

    @property
    def is_resolved(self) -> bool:
        return self.status not in QC_UNRESOLVED_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "name": self.name,
            "status": self.status,
            "result_value": self.result_value,
            "tested_by": self.tested_by,
            "tested_at": self.tested_at.isoformat() if self.tested_at else None,
        }

    def __repr__(self):
        return f"<QcItem {self.id} {self.name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. MaterialLot
# ═════════════════════════════════════════════════════════════════════════════


class MaterialLot(db.Model):
    """Material lot consumed by a batch. Genealogy data only."""

    __tablename__ = "material_lots"

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(
        db.Integer, db.ForeignKey("batches.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    lot_number = db.Column(db.String(60), nullable=False)
    material_name = db.Column(db.String(200), nullable=False)
    quantity = db.Column(db.Float, nullable=True)
    unit = db.Column(db.String(20), nullable=True)

    batch = db.relationship("Batch", back_populates="material_lots")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "lot_number": self.lot_number,
            "material_name": self.material_name,
            "quantity": self.quantity,
            "unit": self.unit,
        }
