# Overview: Flask API routes for catalog operations; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..errors import StorefrontError
from ..services import catalog_service
from ..validation import coerce_int, enforce_price_cents
from ..decorators import require_auth, require_permission


products_bp = Blueprint("products", __name__)


@products_bp.post("/api/admin/products")
@require_auth
@require_permission("product", "create")
def create_product_route():
    """
    Create product.

    Body: {name, slug?, is_active?}; slug defaults to a slugified name.
    """
    try:
        data = request.get_json(silent=True) or {}
        product = catalog_service.create_product(
            name=data.get("name"),
            slug=data.get("slug"),
            is_active=data.get("is_active", True),
        )
        return jsonify({"product": product.to_dict()}), 201

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.post("/api/admin/products/<int:product_id>/variants")
@require_auth
@require_permission("product", "create")
def create_variant_route(product_id: int):
    """
    Create a sellable variant. Its inventory item starts at zero stock;
    receive stock with an inventory adjustment of type "purchase".
    """
    try:
        data = request.get_json(silent=True) or {}
        variant = catalog_service.create_variant(
            product_id=product_id,
            name=data.get("name"),
            sku=data.get("sku"),
            price_cents=enforce_price_cents(data.get("price_cents")),
            is_active=data.get("is_active", True),
            low_stock_threshold=coerce_int(data.get("low_stock_threshold", 5), "low_stock_threshold"),
        )
        return jsonify({"variant": variant.to_dict()}), 201

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create variant")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/api/catalog/variants/<int:variant_id>")
def get_variant_route(variant_id: int):
    try:
        return jsonify({"variant": catalog_service.get_variant(variant_id)}), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
