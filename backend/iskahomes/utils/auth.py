from __future__ import annotations

from functools import wraps

from flask import g, request

from iskahomes.extensions import db
from iskahomes.models import User
from iskahomes.utils.http import error_response
from iskahomes.utils.jwt_utils import decode_token, get_bearer_token

LISTER_TYPES = ("developer", "agent", "agency")
USER_TYPES = ("property_seeker", "developer", "agent", "agency", "admin")


def _request_token(*, allow_query_token: bool = False) -> str | None:
    header = request.headers.get("Authorization", "")
    token = get_bearer_token(header)
    if token:
        return token
    if allow_query_token:
        # EventSource cannot send headers; the realtime streams accept ?token=.
        raw = (request.args.get("token") or "").strip()
        return raw or None
    return None


def current_user(*, allow_query_token: bool = False) -> User | None:
    token = _request_token(allow_query_token=allow_query_token)
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
    except (TypeError, ValueError):
        return None
    try:
        user = db.session.get(User, uid)
    except Exception:
        db.session.rollback()
        return None
    if user is not None:
        g.auth_user_id = int(user.id)
        g.auth_role = user.user_type
    return user


def user_type(u: User | None) -> str:
    if not u:
        return "guest"
    return (getattr(u, "user_type", None) or "property_seeker").strip().lower()


def is_admin(u: User | None) -> bool:
    return user_type(u) == "admin"


def is_lister(u: User | None) -> bool:
    return user_type(u) in LISTER_TYPES


def unauthorized():
    return error_response("UNAUTHORIZED", "Unauthorized", 401)


def forbidden(message: str = "Forbidden"):
    return error_response("FORBIDDEN", message, 403)


def require_auth(*, types: tuple[str, ...] | None = None, allow_query_token: bool = False):
    """Resolve the bearer user into ``g.current_user`` or short-circuit with 401/403."""

    def decorator(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            u = current_user(allow_query_token=allow_query_token)
            if not u:
                return unauthorized()
            if types is not None and user_type(u) not in types:
                return forbidden()
            g.current_user = u
            return fn(*args, **kwargs)

        return wrapped

    return decorator
