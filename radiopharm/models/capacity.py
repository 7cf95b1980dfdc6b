"""
Radiopharmaceutical Fulfillment Core
Capacity domain models.

Models:
    - CapacityDay:          per-calendar-day ledger (total, reserved, committed minutes)
    - CapacityReservation:  one hold against one day, optionally tied to a batch/order

Invariant (without an explicit override):
    reserved_minutes + committed_minutes <= total_capacity_minutes

Reservation lifecycle:
    TENTATIVE → COMMITTED → RELEASED
    TENTATIVE → RELEASED
There is no expiry: an abandoned TENTATIVE hold stays until released.
"""

from datetime import datetime, timezone

from radiopharm.models import db

# ── Constants ────────────────────────────────────────────────────────────────

RESERVATION_MODES = {"TENTATIVE", "COMMITTED"}

RESERVATION_STATUSES = {"TENTATIVE", "COMMITTED", "RELEASED"}

ACTIVE_RESERVATION_STATUSES = frozenset({"TENTATIVE", "COMMITTED"})


class CapacityDay(db.Model):
    """Capacity ledger row for one calendar day.

    The row is the serialization point for every reservation touching the
    day: it is locked (FOR UPDATE where supported) and version-checked on
    each write.
    """

    __tablename__ = "capacity_days"

    id = db.Column(db.Integer, primary_key=True)
    day = db.Column(db.Date, nullable=False, unique=True, index=True)
    total_capacity_minutes = db.Column(db.Float, nullable=False)
    reserved_minutes = db.Column(db.Float, nullable=False, default=0)
    committed_minutes = db.Column(db.Float, nullable=False, default=0)

    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def used_minutes(self) -> float:
        return (self.reserved_minutes or 0) + (self.committed_minutes or 0)

    @property
    def available_minutes(self) -> float:
        return self.total_capacity_minutes - self.used_minutes

    @property
    def utilization_percent(self) -> float:
        if not self.total_capacity_minutes:
            return 0.0
        return self.used_minutes / self.total_capacity_minutes * 100

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "total_capacity_minutes": self.total_capacity_minutes,
            "reserved_minutes": self.reserved_minutes,
            "committed_minutes": self.committed_minutes,
            "available_minutes": self.available_minutes,
            "utilization_percent": self.utilization_percent,
        }

    def __repr__(self):
        return f"<CapacityDay {self.day} {self.used_minutes:g}/{self.total_capacity_minutes:g}>"


class CapacityReservation(db.Model):
    """A hold of production minutes on one day (the reservation handle)."""

    __tablename__ = "capacity_reservations"
    __table_args__ = (
        db.Index("ix_capacity_reservation_day", "day"),
        db.Index("ix_capacity_reservation_batch", "batch_id"),
        db.Index("ix_capacity_reservation_order", "order_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    day = db.Column(db.Date, nullable=False)
    minutes = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(20), nullable=False, comment="TENTATIVE | COMMITTED | RELEASED")
    is_override = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="True when admitted past capacity by explicit override",
    )

    batch_id = db.Column(
        db.Integer, db.ForeignKey("batches.id", ondelete="SET NULL"), nullable=True,
    )
    order_id = db.Column(
        db.Integer, db.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True,
    )

    created_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    committed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RESERVATION_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.day.isoformat(),
            "minutes": self.minutes,
            "reserved_minutes": self.minutes if self.status == "TENTATIVE" else 0,
            "committed_minutes": self.minutes if self.status == "COMMITTED" else 0,
            "status": self.status,
            "is_override": self.is_override,
            "batch_id": self.batch_id,
            "order_id": self.order_id,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "committed_at": self.committed_at.isoformat() if self.committed_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
        }

    def __repr__(self):
        return f"<CapacityReservation #{self.id} {self.day} {self.minutes:g}min [{self.status}]>"
