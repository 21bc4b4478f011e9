# Overview: Flask API routes for checkout; validates carts and places orders.

"""
Checkout API

- POST /api/checkout/validate  dry run: per-line problems and priced totals
- POST /api/checkout           place the order (guest or signed-in)

A card checkout whose gateway session could not be opened still answers
with the order (status draft, reservation released) and a 502 so the
client can offer a retry from the order page.
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import StorefrontError
from ..services import checkout_service
from ..validation import parse_cart_items, parse_checkout_payload, SHIPPING_METHODS
from ..decorators import optional_auth, current_user_id


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.post("/validate")
def validate_cart_route():
    try:
        data = request.get_json(silent=True) or {}
        lines = parse_cart_items(data.get("items"))
        shipping_method = data.get("shipping_method") or "standard"
        if shipping_method not in SHIPPING_METHODS:
            return jsonify({"error": "Invalid shipping method"}), 400

        result = checkout_service.validate_cart(lines)
        body = result.to_dict()
        body["totals"] = checkout_service.calculate_order_totals(
            result.subtotal_cents, shipping_method
        ).to_dict()
        return jsonify(body), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to validate cart")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.post("")
@optional_auth
def checkout_route():
    """
    Place an order.

    Body: {items: [{variant_id, quantity}], email, phone?, shipping: {...},
    shipping_method, payment_method, notes?, return_url?, cancel_url?}
    """
    try:
        checkout = parse_checkout_payload(request.get_json(silent=True))
        result = checkout_service.create_order(checkout, user_id=current_user_id())
        if result.payment_error:
            return jsonify(result.to_dict()), 502
        return jsonify(result.to_dict()), 201

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Checkout failed")
        return jsonify({"error": "Internal server error"}), 500
