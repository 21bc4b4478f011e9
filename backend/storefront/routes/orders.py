# Overview: Flask API routes for a signed-in customer's own orders.

"""
Customer order routes

Ownership is enforced in the order services: another customer's order
answers 404, exactly like a missing one.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import StorefrontError
from ..services import order_service, payment_service
from ..services.query_filters import parse_pagination
from ..decorators import require_auth


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("")
@require_auth
def list_orders_route():
    try:
        page, limit = parse_pagination(
            request.args.get("page"), request.args.get("limit"), default_limit=10, max_limit=50
        )
        orders, pagination = order_service.list_customer_orders(g.current_user.id, page=page, limit=limit)
        return jsonify({"orders": orders, "pagination": pagination}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_service.get_customer_order(order_id, user_id=g.current_user.id)
        return jsonify({"order": order}), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.get("/<int:order_id>/timeline")
@require_auth
def order_timeline_route(order_id: int):
    try:
        timeline = order_service.get_order_timeline(order_id, user_id=g.current_user.id)
        return jsonify({"timeline": timeline}), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.post("/<int:order_id>/cancel")
@require_auth
def cancel_order_route(order_id: int):
    """Customer cancel; only before the order ships."""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.cancel_customer_order(
            order_id, user_id=g.current_user.id, reason=data.get("reason")
        )
        return jsonify({"order": order.to_dict()}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/payments/card")
@require_auth
def retry_card_payment_route(order_id: int):
    """Open a fresh card session for an unpaid order."""
    try:
        data = request.get_json(silent=True) or {}
        session = payment_service.retry_card_payment(
            order_id,
            user_id=g.current_user.id,
            return_url=data.get("return_url"),
            cancel_url=data.get("cancel_url"),
        )
        return jsonify({
            "payment_id": session.payment_id,
            "session_id": session.session_id,
            "payment_url": session.payment_url,
            "expires_at": session.expires_at,
        }), 201

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to start card payment")
        return jsonify({"error": "Internal server error"}), 500
