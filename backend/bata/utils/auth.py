from __future__ import annotations

from datetime import datetime

from flask import g, request

from bata.errors import Forbidden, Unauthorized
from bata.extensions import db
from bata.models import User
from bata.utils.jwt_utils import decode_token, get_bearer_token


def _role(u: User | None) -> str:
    if not u:
        return "guest"
    return (getattr(u, "role", None) or "buyer").strip().lower()


def current_user() -> User | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    sub = payload.get("sub")
    if not sub:
        return None
    try:
        uid = int(sub)
    except Exception:
        return None
    return db.session.get(User, uid)


def require_user() -> User:
    u = current_user()
    if u is None:
        raise Unauthorized("Authentication required")
    g.auth_user_id = int(u.id)
    g.auth_role = _role(u)
    return u


def require_active_user(now=None) -> User:
    """Like require_user, but refuses accounts serving a temporary ban."""
    u = require_user()
    now = now or datetime.utcnow()
    if u.suspended_until is not None and u.suspended_until > now:
        raise Forbidden(
            "Account is temporarily suspended",
            reason="suspended",
            debug={"suspended_until": u.suspended_until.isoformat()},
        )
    return u


def require_admin() -> User:
    u = require_user()
    if _role(u) != "admin":
        raise Forbidden("Admin required")
    return u


def is_admin(u: User | None) -> bool:
    return _role(u) == "admin"


def role_of(u: User | None) -> str:
    return _role(u)
