# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

"""
Authentication API routes

- POST /api/auth/register  customer self-registration
- POST /api/auth/login     email + password -> bearer token
- POST /api/auth/logout    revoke the current token
- GET  /api/auth/me        current user, roles and effective permissions

Staff accounts are created with the CLI (flask users create).
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import StorefrontError
from ..services import auth_service
from ..services import session_service
from ..services.authorization_service import get_authorization
from ..decorators import require_auth
from ..time_utils import to_utc_z


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _session_payload(user, token: str, session) -> dict:
    roles = sorted(auth_service.get_user_role_names(user.id))
    return {
        "user": user.to_dict(),
        "roles": roles,
        "token": token,
        "expires_at": to_utc_z(session.expires_at),
    }


@auth_bp.post("/register")
def register_route():
    """Create a customer account and sign it in."""
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")
        if not email or not password:
            return jsonify({"error": "email and password required"}), 400

        user = auth_service.create_user(
            email,
            password,
            name=data.get("name"),
            roles=("customer",),
            bcrypt_rounds=current_app.config.get("BCRYPT_ROUNDS", 12),
        )
        session, token = session_service.create_session(
            user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify(_session_payload(user, token, session)), 201

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Registration failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Token must be included in Authorization header for protected routes.
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")

        if not all([email, password]):
            return jsonify({"error": "email and password required"}), 400

        user = auth_service.authenticate(email, password)
        if not user:
            current_app.logger.info("Failed login for %s from %s", email, request.remote_addr)
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify(_session_payload(user, token, session)), 200

    except Exception:
        current_app.logger.exception("Login failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    token = request.headers["Authorization"].split(" ", 1)[1].strip()
    session_service.revoke_session(token)
    return jsonify({"success": True}), 200


@auth_bp.get("/me")
@require_auth
def me_route():
    authz = get_authorization()
    return jsonify({
        "user": g.current_user.to_dict(),
        "roles": sorted(g.current_roles),
        "is_staff": authz.is_staff(g.current_roles),
        "permissions": authz.permissions_for(g.current_roles),
    }), 200
