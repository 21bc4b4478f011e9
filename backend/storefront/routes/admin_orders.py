# Overview: Flask API routes for back-office order management.

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import StorefrontError
from ..models.orders import ORDER_STATUS_CANCELLED, ORDER_STATUS_REFUNDED
from ..services import order_service
from ..services.authorization_service import get_authorization
from ..services.query_filters import parse_pagination
from ..validation import parse_status_payload
from ..decorators import require_auth, require_permission, require_staff


admin_orders_bp = Blueprint("admin_orders", __name__, url_prefix="/api/admin/orders")

# Cancelling and refunding need their own grant on top of order:update
_STATUS_ACTIONS = {
    ORDER_STATUS_CANCELLED: "cancel",
    ORDER_STATUS_REFUNDED: "refund",
}


@admin_orders_bp.get("")
@require_auth
@require_permission("order", "list")
def list_orders_route():
    """
    List orders.

    Query params: status, search (order number / email / name),
    date_from, date_to (ISO-8601), page, limit.
    """
    try:
        filters = order_service.build_admin_order_filters(
            status=request.args.get("status"),
            search=request.args.get("search"),
            date_from=request.args.get("date_from"),
            date_to=request.args.get("date_to"),
        )
        page, limit = parse_pagination(request.args.get("page"), request.args.get("limit"))
        orders, pagination = order_service.list_admin_orders(filters, page=page, limit=limit)
        return jsonify({"orders": orders, "pagination": pagination}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@admin_orders_bp.get("/stats")
@require_auth
@require_staff
def order_stats_route():
    return jsonify(order_service.get_order_stats()), 200


@admin_orders_bp.get("/<int:order_id>")
@require_auth
@require_permission("order", "read")
def get_order_route(order_id: int):
    try:
        return jsonify({"order": order_service.get_admin_order(order_id)}), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code


@admin_orders_bp.patch("/<int:order_id>/status")
@require_auth
@require_permission("order", "update")
def update_status_route(order_id: int):
    """
    Move an order along the state machine.

    Body: {status, notes?}. Stock effects (settle on paid, restore on
    cancel) run in the same transaction; customer email goes out after.
    """
    try:
        to_status, notes = parse_status_payload(request.get_json(silent=True))
        action = _STATUS_ACTIONS.get(to_status)
        if action and not get_authorization().is_allowed(g.current_roles, "order", action):
            return jsonify({
                "error": "Insufficient permissions",
                "required_permission": f"order:{action}",
            }), 403
        order = order_service.transition_order_status(
            order_id, to_status, notes=notes, actor_user_id=g.current_user.id,
        )
        return jsonify({"order": order_service.order_detail(order, include_admin=True)}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@admin_orders_bp.patch("/<int:order_id>/notes")
@require_auth
@require_permission("order", "update")
def update_notes_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.update_admin_notes(order_id, data.get("admin_notes"))
        return jsonify({"order": order.to_dict(include_admin=True)}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order notes")
        return jsonify({"error": "Internal server error"}), 500
