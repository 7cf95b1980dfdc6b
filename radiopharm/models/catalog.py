"""
Radiopharmaceutical Fulfillment Core
Reference data models.

Models:
    - Product:   an isotope-labelled product with its physical and process timings
    - Customer:  a delivery point with its transit time from the production site

Both are read by the decay calculator and never mutated by the fulfillment
core once created.
"""

from datetime import datetime, timezone

from radiopharm.models import db

ACTIVITY_UNITS = {"mCi", "MBq", "GBq"}


class Product(db.Model):
    """Radiopharmaceutical product.

    half_life_minutes and overage_percent must be positive; all other
    durations non-negative (enforced in catalog_service and again by the
    decay calculator).
    """

    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    isotope = db.Column(db.String(20), nullable=True, comment="F-18 | Ga-68 | Tc-99m | ...")

    half_life_minutes = db.Column(db.Float, nullable=False)
    synthesis_time_minutes = db.Column(db.Float, nullable=False, default=0)
    qc_time_minutes = db.Column(db.Float, nullable=False, default=0)
    shelf_life_minutes = db.Column(db.Float, nullable=False)
    overage_percent = db.Column(db.Float, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "isotope": self.isotope,
            "half_life_minutes": self.half_life_minutes,
            "synthesis_time_minutes": self.synthesis_time_minutes,
            "qc_time_minutes": self.qc_time_minutes,
            "shelf_life_minutes": self.shelf_life_minutes,
            "overage_percent": self.overage_percent,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Product {self.code} t½={self.half_life_minutes}min>"


class Customer(db.Model):
    """Delivery point (hospital, clinic, imaging centre)."""

    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    travel_time_minutes = db.Column(db.Float, nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "travel_time_minutes": self.travel_time_minutes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Customer {self.code}>"
