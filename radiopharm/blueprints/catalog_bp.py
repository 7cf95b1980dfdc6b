"""
Catalog Blueprint — products and customers.

Routes:
  GET    /products              – list products
  POST   /products              – create product
  GET    /products/<id>         – product detail
  GET    /customers             – list customers
  POST   /customers             – create customer
  GET    /customers/<id>        – customer detail
"""

from flask import Blueprint, jsonify

from radiopharm.blueprints import json_body, register_error_handlers
from radiopharm.services import catalog_service

catalog_bp = Blueprint("catalog_bp", __name__, url_prefix="/api/v1")
register_error_handlers(catalog_bp)


@catalog_bp.route("/products", methods=["GET"])
def list_products():
    return jsonify([p.to_dict() for p in catalog_service.list_products()])


@catalog_bp.route("/products", methods=["POST"])
def create_product():
    return jsonify(catalog_service.create_product(json_body()).to_dict()), 201


@catalog_bp.route("/products/<int:product_id>", methods=["GET"])
def get_product(product_id):
    return jsonify(catalog_service.get_product(product_id).to_dict())


@catalog_bp.route("/customers", methods=["GET"])
def list_customers():
    return jsonify([c.to_dict() for c in catalog_service.list_customers()])


@catalog_bp.route("/customers", methods=["POST"])
def create_customer():
    return jsonify(catalog_service.create_customer(json_body()).to_dict()), 201


@catalog_bp.route("/customers/<int:customer_id>", methods=["GET"])
def get_customer(customer_id):
    return jsonify(catalog_service.get_customer(customer_id).to_dict())
