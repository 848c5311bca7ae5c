from __future__ import annotations


from flask import Blueprint, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from iskahomes.extensions import db
from iskahomes.models import BillingInformation
from iskahomes.utils.auth import require_auth
from iskahomes.utils.clock import utcnow
from iskahomes.utils.http import db_failure, error_response, get_request_payload

billing_bp = Blueprint("billing_bp", __name__, url_prefix="/api/billing-information")

_FIELDS = ("billing_name", "billing_email", "phone", "address", "preferred_payment_method")


def _clear_other_primaries(user_id: int, keep_id: int | None) -> None:
    q = BillingInformation.query.filter(BillingInformation.user_id == int(user_id), BillingInformation.is_primary.is_(True))
    if keep_id is not None:
        q = q.filter(BillingInformation.id != int(keep_id))
    for row in q.all():
        row.is_primary = False


def _apply(row: BillingInformation, data: dict) -> None:
    for field in _FIELDS:
        if field in data:
            value = data.get(field)
            setattr(row, field, (str(value).strip() if value is not None else None) or None)
    if "is_active" in data:
        row.is_active = bool(data.get("is_active"))


def _own_row(user_id: int, raw_id):
    try:
        rid = int(raw_id)
    except (TypeError, ValueError):
        return None
    return BillingInformation.query.filter_by(id=rid, user_id=int(user_id)).first()


@billing_bp.get("")
@require_auth()
def list_billing():
    rows = (
        BillingInformation.query.filter_by(user_id=int(g.current_user.id))
        .order_by(BillingInformation.is_primary.desc(), BillingInformation.id.asc())
        .all()
    )
    return jsonify({"ok": True, "data": [r.to_dict() for r in rows]}), 200


@billing_bp.post("")
@require_auth()
def create_billing():
    u = g.current_user
    data = get_request_payload()
    if not (data.get("billing_name") or "").strip():
        return error_response("VALIDATION_FAILED", "billing_name is required", 400)
    row = BillingInformation(user_id=int(u.id), user_type=u.user_type, is_active=True)
    _apply(row, data)
    has_any = BillingInformation.query.filter_by(user_id=int(u.id)).first() is not None
    row.is_primary = bool(data.get("is_primary")) or not has_any
    try:
        db.session.add(row)
        db.session.flush()
        if row.is_primary:
            _clear_other_primaries(u.id, row.id)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "create_billing")
    return jsonify({"ok": True, "data": row.to_dict()}), 201


@billing_bp.put("")
@require_auth()
def update_billing():
    u = g.current_user
    data = get_request_payload()
    row = _own_row(u.id, data.get("id"))
    if row is None:
        return error_response("NOT_FOUND", "Billing information not found", 404)
    _apply(row, data)
    if "is_primary" in data:
        row.is_primary = bool(data.get("is_primary"))
        if row.is_primary:
            _clear_other_primaries(u.id, row.id)
    row.updated_at = utcnow()
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "update_billing")
    return jsonify({"ok": True, "data": row.to_dict()}), 200


@billing_bp.delete("")
@require_auth()
def delete_billing():
    u = g.current_user
    raw_id = request.args.get("id") or get_request_payload().get("id")
    row = _own_row(u.id, raw_id)
    if row is None:
        return error_response("NOT_FOUND", "Billing information not found", 404)
    try:
        db.session.delete(row)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "delete_billing")
    return jsonify({"ok": True}), 200
