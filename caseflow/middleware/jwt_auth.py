"""
JWT Auth Middleware — parses the Bearer token, sets g.current_user_id / g.current_role.

Requests without a valid token proceed anonymously; the ``login_required``
and ``role_required`` decorators in ``caseflow.auth`` decide whether the
route needs an identity.
"""

import logging

import jwt as pyjwt
from flask import g, request

from caseflow.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.current_user_id = None
        g.current_role = None
        g.auth_error = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]

        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            g.auth_error = "Token expired"
            return
        except pyjwt.InvalidTokenError as exc:
            g.auth_error = "Invalid token"
            logger.debug("Rejected bearer token: %s", exc)
            return

        g.current_user_id = payload.get("sub")
        g.current_role = payload.get("role")
