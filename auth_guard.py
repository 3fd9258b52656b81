# auth_guard.py
from __future__ import annotations

import jwt
from functools import wraps
from datetime import datetime, timezone, timedelta

from flask import request, jsonify, g, current_app

from db import db
from models.user import User
from services.identity import Identity

__all__ = ["require_role", "require_api_key", "issue_token", "current_identity"]


def issue_token(user: User) -> str:
    """Signed HS256 JWT carrying the user id; roles are re-read per request."""
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user.id,
        "iat": now,
        "exp": now + timedelta(hours=int(current_app.config["JWT_TTL_HOURS"])),
    }
    return jwt.encode(payload, current_app.config["SECRET_KEY"], algorithm="HS256")


def current_identity() -> Identity:
    return g.identity  # type: ignore[attr-defined]


def require_role(*roles):
    """
    Usage:
      @require_role()                  -> any authenticated user
      @require_role("staff")           -> only staff (or admin)
      @require_role("admin")           -> only admin
    """
    # Support passing a single list/tuple as well
    if len(roles) == 1 and isinstance(roles[0], (list, tuple, set)):
        roles = tuple(roles[0])
    allowed = {str(r).lower() for r in roles if r}

    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer "):
                return jsonify(error="Missing token", code="unauthenticated"), 401

            token = auth.split(" ", 1)[1]
            try:
                payload = jwt.decode(token, current_app.config["SECRET_KEY"], algorithms=["HS256"])
            except jwt.ExpiredSignatureError:
                return jsonify(error="Token has expired", code="unauthenticated"), 401
            except jwt.InvalidTokenError:
                return jsonify(error="Invalid token", code="unauthenticated"), 401

            user = db.session.get(User, payload.get("user_id"))
            if not user:
                return jsonify(error="User not found", code="unauthenticated"), 401

            identity = Identity.from_user(user)
            # Stash for downstream handlers
            g.user = user  # type: ignore[attr-defined]
            g.identity = identity  # type: ignore[attr-defined]

            current_app.logger.info(
                "[guard] %s %s uid=%s role=%s ip=%s",
                request.method,
                request.path,
                user.id,
                user.role,
                request.remote_addr,
            )

            # Role check (admin bypass)
            held = {
                name for name, flag in (
                    ("admin", identity.is_admin),
                    ("staff", identity.is_staff),
                    ("student", identity.is_student),
                ) if flag
            }
            if allowed and not (held & allowed) and not identity.is_admin:
                return jsonify(error="Insufficient permissions", code="forbidden"), 403

            return f(*args, **kwargs)

        return wrapped

    return decorator


def require_api_key(func):
    """Service-to-service guard: X-API-Key must match SERVICE_API_KEY."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("SERVICE_API_KEY")
        sent = request.headers.get("X-API-Key")
        if not expected or sent != expected:
            current_app.logger.warning("[guard] invalid API key on %s", request.path)
            return jsonify(error="Invalid or missing service API key", code="unauthenticated"), 401
        return func(*args, **kwargs)

    return wrapper
