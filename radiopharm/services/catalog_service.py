"""
Product / customer reference data.

Products and customers feed the decay calculator. They are validated once
here so every stored row is a valid calculator input.
"""

import logging

from sqlalchemy import select

from radiopharm.core.exceptions import ValidationError
from radiopharm.models import db
from radiopharm.models.catalog import Customer, Product
from radiopharm.utils.helpers import get_or_404

logger = logging.getLogger(__name__)


def _number(data: dict, field: str, errors: dict, *, positive=False, default=None):
    raw = data.get(field, default)
    if raw is None:
        errors[field] = "required"
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        errors[field] = "must be a number"
        return None
    if positive and value <= 0:
        errors[field] = "must be positive"
    elif value < 0:
        errors[field] = "must not be negative"
    return value


def _require_text(data: dict, field: str, errors: dict, max_len: int) -> str:
    value = (data.get(field) or "").strip()
    if not value:
        errors[field] = "required"
    elif len(value) > max_len:
        errors[field] = f"max {max_len} chars"
    return value


def _ensure_unique_code(model, code: str) -> None:
    if code and db.session.execute(select(model.id).where(model.code == code)).first():
        raise ValidationError(
            f"{model.__name__} code already exists", details={"code": code},
        )


# ── Products ─────────────────────────────────────────────────────────────────


def create_product(data: dict) -> Product:
    errors: dict = {}
    code = _require_text(data, "code", errors, 30)
    name = _require_text(data, "name", errors, 200)
    half_life = _number(data, "half_life_minutes", errors, positive=True)
    synthesis = _number(data, "synthesis_time_minutes", errors, default=0)
    qc = _number(data, "qc_time_minutes", errors, default=0)
    shelf_life = _number(data, "shelf_life_minutes", errors, positive=True)
    overage = _number(data, "overage_percent", errors, positive=True)
    if errors:
        raise ValidationError("Invalid product", details=errors)
    _ensure_unique_code(Product, code)

    product = Product(
        code=code,
        name=name,
        isotope=(data.get("isotope") or "").strip() or None,
        half_life_minutes=half_life,
        synthesis_time_minutes=synthesis,
        qc_time_minutes=qc,
        shelf_life_minutes=shelf_life,
        overage_percent=overage,
    )
    db.session.add(product)
    db.session.commit()
    logger.info("Product created: %s", code, extra={"event_type": "product.create"})
    return product


def list_products() -> list[Product]:
    return list(db.session.execute(select(Product).order_by(Product.code)).scalars().all())


def get_product(product_id: int) -> Product:
    return get_or_404(Product, product_id)


# ── Customers ────────────────────────────────────────────────────────────────


def create_customer(data: dict) -> Customer:
    errors: dict = {}
    code = _require_text(data, "code", errors, 30)
    name = _require_text(data, "name", errors, 200)
    travel = _number(data, "travel_time_minutes", errors, default=0)
    if errors:
        raise ValidationError("Invalid customer", details=errors)
    _ensure_unique_code(Customer, code)

    customer = Customer(code=code, name=name, travel_time_minutes=travel)
    db.session.add(customer)
    db.session.commit()
    logger.info("Customer created: %s", code, extra={"event_type": "customer.create"})
    return customer


def list_customers() -> list[Customer]:
    return list(db.session.execute(select(Customer).order_by(Customer.code)).scalars().all())


def get_customer(customer_id: int) -> Customer:
    return get_or_404(Customer, customer_id)
