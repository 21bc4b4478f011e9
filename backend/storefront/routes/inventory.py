# Overview: Flask API routes for inventory operations; parses input and returns JSON responses.

"""
Back-office inventory routes

Every stock change goes through the inventory ledger and leaves an
InventoryMovement row; there is no endpoint that writes quantities
directly.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import StorefrontError
from ..services import inventory_service
from ..services.query_filters import parse_pagination
from ..validation import coerce_int, parse_adjustment_payload
from ..decorators import require_auth, require_permission


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/admin/inventory")


@inventory_bp.get("")
@require_auth
@require_permission("inventory", "list")
def list_inventory_route():
    """Query params: search, stock_status (all|low|out|normal), page, limit."""
    try:
        filters = inventory_service.build_inventory_filters(
            search=request.args.get("search"),
            stock_status=request.args.get("stock_status"),
        )
        page, limit = parse_pagination(request.args.get("page"), request.args.get("limit"))
        items, pagination = inventory_service.list_inventory(filters, page=page, limit=limit)
        return jsonify({"items": items, "pagination": pagination}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/stats")
@require_auth
@require_permission("inventory", "read")
def inventory_stats_route():
    return jsonify(inventory_service.get_inventory_stats()), 200


@inventory_bp.get("/low-stock")
@require_auth
@require_permission("inventory", "read")
def low_stock_route():
    try:
        limit = coerce_int(request.args.get("limit", 10), "limit")
        return jsonify({"items": inventory_service.get_low_stock_alerts(limit=max(1, min(limit, 100)))}), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code


@inventory_bp.post("/<int:item_id>/adjust")
@require_auth
@require_permission("inventory", "adjust")
def adjust_inventory_route(item_id: int):
    """
    Manual stock adjustment.

    Body: {adjustment: int (non-zero), reason, type?: adjustment|purchase|return}
    Rejected with 409 when the result would go below zero or below what is
    currently reserved.
    """
    try:
        payload = parse_adjustment_payload(request.get_json(silent=True))
        movement = inventory_service.adjust(
            item_id,
            payload["delta"],
            payload["reason"],
            movement_type=payload["movement_type"],
            actor_user_id=g.current_user.id,
        )
        item = inventory_service.get_inventory_item(item_id)
        return jsonify({"item": item.to_dict(), "movement": movement.to_dict()}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.patch("/<int:item_id>/threshold")
@require_auth
@require_permission("inventory", "update")
def update_threshold_route(item_id: int):
    try:
        data = request.get_json(silent=True) or {}
        threshold = coerce_int(data.get("low_stock_threshold"), "low_stock_threshold")
        item = inventory_service.update_low_stock_threshold(item_id, threshold)
        return jsonify({"item": item.to_dict()}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update threshold")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/<int:item_id>/movements")
@require_auth
@require_permission("inventory", "read")
def movements_route(item_id: int):
    try:
        page, limit = parse_pagination(request.args.get("page"), request.args.get("limit"), default_limit=50)
        movements, pagination = inventory_service.get_movements(item_id, page=page, limit=limit)
        return jsonify({
            "movements": [m.to_dict() for m in movements],
            "pagination": pagination,
        }), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
