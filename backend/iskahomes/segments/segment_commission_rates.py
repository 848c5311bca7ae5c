from __future__ import annotations

from flask import Blueprint, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from iskahomes.extensions import db
from iskahomes.services import commission_rate_service as rates
from iskahomes.services.errors import ServiceError
from iskahomes.utils.auth import require_auth
from iskahomes.utils.http import db_failure, error_response, service_error

commission_rates_bp = Blueprint("commission_rates_bp", __name__, url_prefix="/api/agencies/commission-rates")


@commission_rates_bp.get("")
@require_auth(types=("agency",))
def list_rates():
    rows = rates.list_rates(g.current_user)
    return jsonify({"ok": True, "data": [r.to_dict() for r in rows]}), 200


@commission_rates_bp.post("")
@require_auth(types=("agency",))
def save_rate():
    payload = request.get_json(silent=True)
    try:
        row, created = rates.upsert_rate(g.current_user, payload)
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "save_commission_rate")
    return jsonify({"ok": True, "data": row.to_dict(), "created": created}), 201 if created else 200


@commission_rates_bp.put("")
@require_auth(types=("agency",))
def replace_rates():
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        payload = payload.get("rates")
    try:
        rows = rates.replace_rates(g.current_user, payload)
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "replace_commission_rates")
    return jsonify({"ok": True, "data": [r.to_dict() for r in rows]}), 200


@commission_rates_bp.delete("/<int:rate_id>")
@require_auth(types=("agency",))
def delete_rate(rate_id):
    try:
        rates.delete_rate(g.current_user, rate_id)
    except ServiceError as e:
        return service_error(e)
    return jsonify({"ok": True}), 200


@commission_rates_bp.get("/resolve")
@require_auth(types=("agency",))
def resolve_rate():
    try:
        purpose_id = int(request.args["purpose_id"])
    except (KeyError, TypeError, ValueError):
        return error_response("VALIDATION_FAILED", "purpose_id is required", 400)
    raw_type = (request.args.get("type_id") or "").strip()
    try:
        type_id = int(raw_type) if raw_type else None
    except ValueError:
        return error_response("VALIDATION_FAILED", "type_id must be an integer", 400)
    try:
        resolution = rates.resolve_rate(
            g.current_user.id,
            purpose_id=purpose_id,
            type_id=type_id,
            amount=request.args.get("amount"),
        )
    except ServiceError as e:
        return service_error(e)
    return jsonify({"ok": True, "data": resolution.to_dict()}), 200
