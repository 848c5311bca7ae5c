from __future__ import annotations


from flask import Blueprint, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from iskahomes.extensions import db
from iskahomes.models import SubscriptionPackage, User
from iskahomes.services import subscription_service as subs
from iskahomes.services.errors import ServiceError
from iskahomes.utils.auth import require_auth
from iskahomes.utils.clock import utcnow
from iskahomes.utils.events import log_event
from iskahomes.utils.http import db_failure, error_response, get_request_payload, service_error

admin_subscriptions_bp = Blueprint("admin_subscriptions_bp", __name__, url_prefix="/api/admin")

PACKAGE_USER_TYPES = tuple(subs.PACKAGE_AUDIENCES.values())
_FLOAT_FIELDS = ("local_currency_price", "international_currency_price", "total_amount_ghs", "total_amount_usd")
_INT_FIELDS = ("duration", "ideal_duration")


def _apply_package(row: SubscriptionPackage, data: dict) -> None:
    if "name" in data:
        name = (data.get("name") or "").strip()[:120]
        if not name:
            raise ServiceError("VALIDATION_FAILED", "name is required", 400)
        row.name = name
    for field in ("description", "display_text", "span"):
        if field in data:
            setattr(row, field, (data.get(field) or "").strip() or None)
    if "features" in data:
        features = data.get("features")
        if features is not None and not isinstance(features, list):
            raise ServiceError("VALIDATION_FAILED", "features must be a list", 400)
        row.features = features or []
    if "user_type" in data:
        ut = (data.get("user_type") or "").strip().lower() or None
        if ut is not None and ut not in PACKAGE_USER_TYPES:
            raise ServiceError("VALIDATION_FAILED", "Invalid user_type", 400)
        row.user_type = ut
    for field in _FLOAT_FIELDS:
        if field in data:
            raw = data.get(field)
            try:
                value = float(raw) if raw not in (None, "") else None
            except (TypeError, ValueError):
                raise ServiceError("VALIDATION_FAILED", f"{field} must be a number", 400)
            if value is not None and value < 0:
                raise ServiceError("VALIDATION_FAILED", f"{field} must not be negative", 400)
            if field in ("local_currency_price", "international_currency_price"):
                value = value or 0.0
            setattr(row, field, value)
    for field in _INT_FIELDS:
        if field in data:
            raw = data.get(field)
            try:
                setattr(row, field, int(raw) if raw not in (None, "") else None)
            except (TypeError, ValueError):
                raise ServiceError("VALIDATION_FAILED", f"{field} must be an integer", 400)
    if "is_active" in data:
        row.is_active = bool(data.get("is_active"))


@admin_subscriptions_bp.get("/packages")
@require_auth(types=("admin",))
def list_packages():
    q = SubscriptionPackage.query
    if (request.args.get("active") or "").strip().lower() in ("1", "true", "yes"):
        q = q.filter_by(is_active=True)
    rows = q.order_by(SubscriptionPackage.id.asc()).all()
    return jsonify({"ok": True, "data": [r.to_dict() for r in rows]}), 200


@admin_subscriptions_bp.post("/packages")
@require_auth(types=("admin",))
def create_package():
    data = get_request_payload()
    row = SubscriptionPackage(is_active=True)
    try:
        if not (data.get("name") or "").strip():
            raise ServiceError("VALIDATION_FAILED", "name is required", 400)
        _apply_package(row, data)
        db.session.add(row)
        db.session.flush()
        log_event("subscription_package_created", actor_user_id=g.current_user.id, subject_type="subscription_package", subject_id=row.id)
        db.session.commit()
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "create_package")
    return jsonify({"ok": True, "data": row.to_dict()}), 201


@admin_subscriptions_bp.put("/packages/<int:package_id>")
@require_auth(types=("admin",))
def update_package(package_id):
    row = db.session.get(SubscriptionPackage, package_id)
    if row is None:
        return error_response("NOT_FOUND", "Package not found", 404)
    try:
        _apply_package(row, get_request_payload())
        row.updated_at = utcnow()
        db.session.commit()
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    return jsonify({"ok": True, "data": row.to_dict()}), 200


@admin_subscriptions_bp.delete("/packages/<int:package_id>")
@require_auth(types=("admin",))
def deactivate_package(package_id):
    row = db.session.get(SubscriptionPackage, package_id)
    if row is None:
        return error_response("NOT_FOUND", "Package not found", 404)
    row.is_active = False
    row.updated_at = utcnow()
    db.session.commit()
    return jsonify({"ok": True, "data": row.to_dict()}), 200


@admin_subscriptions_bp.get("/subscriptions-requests")
@require_auth(types=("admin",))
def list_requests():
    status = (request.args.get("status") or "").strip().lower() or None
    try:
        rows = subs.admin_list_requests(status=status)
    except ServiceError as e:
        return service_error(e)
    users = {u.id: u for u in User.query.filter(User.id.in_({r.user_id for r in rows})).all()} if rows else {}
    data = []
    for row in rows:
        item = row.to_dict()
        owner = users.get(row.user_id)
        item["user"] = owner.public_dict() if owner else None
        data.append(item)
    return jsonify({"ok": True, "data": data}), 200


@admin_subscriptions_bp.put("/subscriptions-requests")
@require_auth(types=("admin",))
def review_request():
    data = get_request_payload()
    if not data.get("request_id") or not data.get("action"):
        return error_response("VALIDATION_FAILED", "Request ID and action are required", 400)
    try:
        row = subs.review_request(
            g.current_user,
            data.get("request_id"),
            data.get("action"),
            rejection_reason=data.get("rejection_reason"),
            admin_notes=data.get("admin_notes"),
        )
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "review_subscription_request")
    return jsonify({"ok": True, "data": row.to_dict()}), 200


@admin_subscriptions_bp.get("/subscription-history")
@require_auth(types=("admin",))
def subscription_history():
    raw = (request.args.get("user_id") or "").strip()
    try:
        user_id = int(raw) if raw else None
    except ValueError:
        return error_response("VALIDATION_FAILED", "user_id must be an integer", 400)
    rows = subs.history_for(user_id=user_id)
    return jsonify({"ok": True, "data": [r.to_dict() for r in rows]}), 200
