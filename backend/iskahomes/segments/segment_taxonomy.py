from __future__ import annotations

from flask import Blueprint, jsonify
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from iskahomes.extensions import db
from iskahomes.models import PropertyPurpose, PropertyType
from iskahomes.utils.auth import require_auth
from iskahomes.utils.events import log_event
from iskahomes.utils.http import db_failure, error_response, get_request_payload
from iskahomes.utils.slugs import slugify

taxonomy_bp = Blueprint("taxonomy_bp", __name__, url_prefix="/api")


@taxonomy_bp.get("/property-taxonomy")
def property_taxonomy():
    purposes = PropertyPurpose.query.filter_by(is_active=True).order_by(PropertyPurpose.name.asc()).all()
    types = PropertyType.query.filter_by(is_active=True).order_by(PropertyType.name.asc()).all()
    return jsonify({
        "ok": True,
        "purposes": [p.to_dict() for p in purposes],
        "types": [t.to_dict() for t in types],
    }), 200


def _create_entry(model, kind: str):
    data = get_request_payload()
    name = (data.get("name") or "").strip()[:80]
    if not name:
        return error_response("VALIDATION_FAILED", "name is required", 400)
    if model.query.filter(func.lower(model.name) == name.lower()).first():
        return error_response("CONFLICT", f"{kind} already exists", 409)
    row = model(name=name, slug=slugify(name) or kind, is_active=bool(data.get("is_active", True)))
    try:
        db.session.add(row)
        db.session.flush()
        log_event(f"{kind}_created", subject_type=kind, subject_id=row.id)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, f"create_{kind}")
    return jsonify({"ok": True, "data": row.to_dict()}), 201


@taxonomy_bp.post("/admin/property-purposes")
@require_auth(types=("admin",))
def create_purpose():
    return _create_entry(PropertyPurpose, "property_purpose")


@taxonomy_bp.post("/admin/property-types")
@require_auth(types=("admin",))
def create_type():
    return _create_entry(PropertyType, "property_type")
