from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from iskahomes.extensions import db
from iskahomes.models import User
from iskahomes.utils.auth import USER_TYPES, require_auth
from iskahomes.utils.events import log_event
from iskahomes.utils.http import db_failure, error_response, get_request_payload, rate_limit_response
from iskahomes.utils.jwt_utils import create_access_token
from iskahomes.utils.slugs import unique_slug

auth_bp = Blueprint("auth_bp", __name__, url_prefix="/api/auth")

MIN_PASSWORD_LENGTH = 8
SIGNUP_TYPES = tuple(t for t in USER_TYPES if t != "admin")


def _session_payload(user: User) -> dict:
    return {
        "ok": True,
        "token": create_access_token(int(user.id), user.user_type),
        "user": user.to_dict(),
    }


def _user_slug(name: str) -> str:
    return unique_slug(
        name,
        lambda candidate: db.session.query(User.query.filter_by(slug=candidate).exists()).scalar(),
        fallback="user",
    )


@auth_bp.post("/signup")
def signup():
    rl = rate_limit_response("auth_signup", limit=10, window_seconds=60)
    if rl is not None:
        return rl
    data = get_request_payload()
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    user_type = (data.get("user_type") or "property_seeker").strip().lower()

    if not name or not email or not password:
        return error_response("VALIDATION_FAILED", "Name, email and password are required", 400)
    if "@" not in email:
        return error_response("VALIDATION_FAILED", "Invalid email", 400)
    if len(password) < MIN_PASSWORD_LENGTH:
        return error_response("VALIDATION_FAILED", f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400)
    if user_type == "admin":
        return error_response("FORBIDDEN", "Admin signup is not allowed", 403)
    if user_type not in SIGNUP_TYPES:
        return error_response("VALIDATION_FAILED", "Invalid user_type", 400)
    if User.query.filter_by(email=email).first():
        return error_response("CONFLICT", "Email already in use", 409)

    u = User(
        name=name[:120],
        email=email,
        phone=(data.get("phone") or "").strip()[:32] or None,
        user_type=user_type,
        slug=_user_slug(name),
        is_verified=False,
    )
    u.set_password(password)
    try:
        db.session.add(u)
        db.session.flush()
        log_event("user_signed_up", actor_user_id=u.id, subject_type="user", subject_id=u.id, metadata={"user_type": user_type})
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.info("signup_conflict email=%s", email)
        return error_response("CONFLICT", "Email already in use", 409)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "signup")
    return jsonify(_session_payload(u)), 201


@auth_bp.post("/signin")
def signin():
    rl = rate_limit_response("auth_signin", limit=10, window_seconds=60)
    if rl is not None:
        return rl
    data = get_request_payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return error_response("VALIDATION_FAILED", "Email and password are required", 400)

    u = User.query.filter_by(email=email).first()
    if not u or not u.check_password(password):
        return error_response("INVALID_CREDENTIALS", "Invalid credentials", 401)
    return jsonify(_session_payload(u)), 200


@auth_bp.get("/me")
@require_auth()
def me():
    return jsonify({"ok": True, "user": g.current_user.to_dict()}), 200


@auth_bp.post("/change-password")
@require_auth()
def change_password():
    data = get_request_payload()
    current = data.get("current_password") or ""
    new = data.get("new_password") or ""
    u = g.current_user
    if not current or not new:
        return error_response("VALIDATION_FAILED", "current_password and new_password are required", 400)
    if not u.check_password(current):
        return error_response("INVALID_CREDENTIALS", "Current password is incorrect", 400)
    if len(new) < MIN_PASSWORD_LENGTH:
        return error_response("VALIDATION_FAILED", f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400)
    u.set_password(new)
    try:
        log_event("password_changed", actor_user_id=u.id, subject_type="user", subject_id=u.id)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "change_password")
    return jsonify({"ok": True, "message": "Password updated"}), 200
