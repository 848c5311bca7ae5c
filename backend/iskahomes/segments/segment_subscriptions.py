from __future__ import annotations

from flask import Blueprint, g, jsonify
from sqlalchemy.exc import SQLAlchemyError

from iskahomes.extensions import db
from iskahomes.services import subscription_service as subs
from iskahomes.services.errors import ServiceError
from iskahomes.utils.auth import LISTER_TYPES, require_auth
from iskahomes.utils.http import db_failure, get_request_payload, service_error

subscriptions_bp = Blueprint("subscriptions_bp", __name__, url_prefix="/api")


@subscriptions_bp.get("/subscriptions")
@require_auth(types=LISTER_TYPES)
def current_subscription():
    u = g.current_user
    sub = subs.current_subscription(u)
    return jsonify({
        "ok": True,
        "success": True,
        "data": sub.to_dict() if sub else None,
        "currency": subs.resolve_currency(u),
    }), 200


@subscriptions_bp.post("/subscriptions")
@require_auth(types=LISTER_TYPES)
def select_package():
    data = get_request_payload()
    try:
        result = subs.subscribe(g.current_user, data.get("package_id"), payment_method=data.get("payment_method"))
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "subscribe")
    invoice = result["invoice"]
    request_row = result["subscription_request"]
    return jsonify({
        "ok": True,
        "success": True,
        "data": result["subscription"].to_dict(),
        "invoice": invoice.to_dict() if invoice else None,
        "subscription_request": request_row.to_dict() if request_row else None,
        "message": result["message"],
    }), 200


@subscriptions_bp.post("/subscriptions/cancel")
@require_auth(types=LISTER_TYPES)
def cancel_subscription():
    data = get_request_payload()
    try:
        row = subs.request_cancellation(g.current_user, reason=data.get("cancellation_reason"))
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    return jsonify({
        "ok": True,
        "success": True,
        "data": row.to_dict(),
        "message": "Cancellation request submitted for admin review.",
    }), 200


@subscriptions_bp.get("/subscriptions-requests")
@require_auth(types=LISTER_TYPES)
def my_requests():
    rows = subs.list_requests(g.current_user)
    return jsonify({"ok": True, "data": [r.to_dict() for r in rows]}), 200


@subscriptions_bp.delete("/subscriptions-requests/<int:request_id>")
@require_auth(types=LISTER_TYPES)
def cancel_request(request_id):
    try:
        row = subs.cancel_own_request(g.current_user, request_id)
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    return jsonify({"ok": True, "data": row.to_dict()}), 200
