# Overview: Request and permission decorators for API routes.

from functools import wraps
from flask import current_app, request, jsonify, g

from .services import session_service
from .services.authorization_service import get_authorization


def _is_authenticated() -> bool:
    return getattr(g, 'current_user', None) is not None


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def _load_context(token: str) -> bool:
    context = session_service.validate_session(token)
    if not context:
        return False
    g.current_user = context.user
    g.current_roles = context.roles
    g.session_context = context
    return True


def current_user_id() -> int | None:
    user = getattr(g, 'current_user', None)
    return user.id if user is not None else None


def current_user_is_staff() -> bool:
    return _is_authenticated() and get_authorization().is_staff(g.current_roles)


def require_auth(f):
    """
    Require authentication.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.current_roles: set of role names
    - g.session_context: The full SessionContext object

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid or expired token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        if not token:
            return jsonify({"error": "Authentication required"}), 401

        if not _load_context(token):
            return jsonify({"error": "Invalid or expired token"}), 401

        return f(*args, **kwargs)

    return decorated_function


def optional_auth(f):
    """
    Attach the user when a valid token is sent; continue as a guest otherwise.

    Used by checkout, which accepts guest orders.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.current_user = None
        g.current_roles = set()
        token = _bearer_token()
        if token:
            _load_context(token)
        return f(*args, **kwargs)

    return decorated_function


def require_staff(f):
    """Require any back-office role (support, manager, admin)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"error": "Authentication required"}), 401
        if not current_user_is_staff():
            return jsonify({"error": "Insufficient permissions"}), 403
        return f(*args, **kwargs)
    return decorated_function


def require_permission(resource: str, action: str):
    """
    Require the authenticated user's roles to allow action on resource.

    Must be applied below @require_auth.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Ensure @require_auth was called first
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if not get_authorization().is_allowed(g.current_roles, resource, action):
                current_app.logger.warning(
                    "Permission denied: user=%s %s:%s on %s",
                    g.current_user.id, resource, action, request.path,
                )
                return jsonify({
                    "error": "Insufficient permissions",
                    "required_permission": f"{resource}:{action}",
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
