# Overview: Flask API routes for payment operations; parses input and returns JSON responses.

"""
Payment routes

- GET  /api/payments/verify/<session_id>  pull the session status from the
  gateway and reconcile it (covers a missed webhook)
- GET  /api/admin/payments                list / search payments
- GET  /api/admin/payments/<id>
- POST /api/admin/payments/<id>/verify-bank-transfer  {approved, notes?}
- POST /api/admin/payments/<id>/collect               cash on delivery received
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import StorefrontError
from ..services import payment_service
from ..services.query_filters import parse_pagination
from ..services.webhook_service import pull_payment_status
from ..decorators import require_auth, require_permission


payments_bp = Blueprint("payments", __name__)


@payments_bp.get("/api/payments/verify/<session_id>")
def verify_session_route(session_id: str):
    try:
        return jsonify(pull_payment_status(session_id)), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to verify payment session")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/api/admin/payments")
@require_auth
@require_permission("payment", "list")
def list_payments_route():
    try:
        filters = payment_service.build_payment_filters(
            status=request.args.get("status"),
            method=request.args.get("method"),
            search=request.args.get("search"),
        )
        page, limit = parse_pagination(request.args.get("page"), request.args.get("limit"))
        payments, pagination = payment_service.list_payments(filters, page=page, limit=limit)
        return jsonify({"payments": payments, "pagination": pagination}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/api/admin/payments/<int:payment_id>")
@require_auth
@require_permission("payment", "read")
def get_payment_route(payment_id: int):
    try:
        return jsonify({"payment": payment_service.get_payment(payment_id).to_dict()}), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code


@payments_bp.post("/api/admin/payments/<int:payment_id>/verify-bank-transfer")
@require_auth
@require_permission("payment", "verify")
def verify_bank_transfer_route(payment_id: int):
    try:
        data = request.get_json(silent=True) or {}
        approved = data.get("approved")
        if not isinstance(approved, bool):
            return jsonify({"error": "approved must be true or false"}), 400

        payment, outcome = payment_service.verify_bank_transfer(
            payment_id,
            approved=approved,
            notes=data.get("notes"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"payment": payment.to_dict(), "outcome": outcome}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to verify bank transfer")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/api/admin/payments/<int:payment_id>/collect")
@require_auth
@require_permission("payment", "verify")
def collect_cod_route(payment_id: int):
    try:
        data = request.get_json(silent=True) or {}
        payment, outcome = payment_service.collect_cod_payment(
            payment_id, notes=data.get("notes"), actor_user_id=g.current_user.id,
        )
        return jsonify({"payment": payment.to_dict(), "outcome": outcome}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record cash collection")
        return jsonify({"error": "Internal server error"}), 500
