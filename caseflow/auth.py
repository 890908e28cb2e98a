"""
caseflow
Authorization decorators and request guards.

Provides:
    - login_required: the route needs an authenticated actor (JWT)
    - role_required: the route needs an elevated role (ELEVATED_ROLES)
    - current_actor(): (actor_id, role) of the authenticated caller
    - Content-Type enforcement for state-changing requests (CSRF mitigation)

Identity is established by ``caseflow.middleware.jwt_auth``; this module
only decides whether the identity is sufficient for the route.
"""

import functools
import logging

from flask import current_app, g, request

from caseflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def current_actor() -> tuple[str | None, str | None]:
    return getattr(g, "current_user_id", None), getattr(g, "current_role", None)


def is_elevated(role: str | None) -> bool:
    return bool(role) and role in current_app.config.get("ELEVATED_ROLES", ())


def login_required(f):
    """Decorator: require a valid Bearer token."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        actor_id, _role = current_actor()
        if not actor_id:
            message = getattr(g, "auth_error", None) or "Authentication required"
            return api_error(E.UNAUTHENTICATED, message)
        return f(*args, **kwargs)

    return decorated


def role_required(*roles: str, elevated: bool = False):
    """
    Decorator: require one of ``roles`` (or any elevated role).

    Usage:
        @role_required(elevated=True)
        def publish_definition(definition_id): ...
    """
    def decorator(f):
        @functools.wraps(f)
        @login_required
        def decorated(*args, **kwargs):
            _actor_id, role = current_actor()
            allowed = role in roles or (elevated and is_elevated(role))
            if not allowed:
                logger.warning(
                    "Access denied: role '%s' tried to access elevated endpoint %s",
                    role, request.path,
                )
                return api_error(E.FORBIDDEN, "Insufficient permissions",
                                 details={"role": role})
            return f(*args, **kwargs)
        return decorated
    return decorator


def init_auth(app):
    """
    Install the Content-Type guard on state-changing API requests.

    HTML forms cannot send application/json, which keeps the JSON RPC
    surface out of reach of cross-site form posts.
    """
    @app.before_request
    def _check_content_type():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            ct = request.content_type or ""
            if "application/json" not in ct and request.content_length and request.content_length > 0:
                return api_error(
                    E.VALIDATION_INVALID,
                    "Content-Type must be application/json for state-changing requests",
                    status=415,
                )
        return None
