from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from iskahomes.extensions import db
from iskahomes.services import lead_service
from iskahomes.services.errors import ServiceError
from iskahomes.utils.auth import LISTER_TYPES, require_auth
from iskahomes.utils.http import get_request_payload, service_error

leads_bp = Blueprint("leads_bp", __name__, url_prefix="/api/leads")


@leads_bp.post("/create")
@require_auth(types=("property_seeker",))
def create_lead():
    data = get_request_payload()
    try:
        lead, created = lead_service.create_lead(
            g.current_user,
            listing_id=data.get("listingId"),
            lister_id=data.get("listerId"),
            message=data.get("message"),
        )
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except (TypeError, ValueError):
        return service_error(ServiceError("VALIDATION_FAILED", "listingId and listerId must be integers", 400))
    return jsonify({"ok": True, "data": lead.to_dict(), "created": created}), 201 if created else 200


@leads_bp.get("")
@require_auth(types=LISTER_TYPES)
def list_leads():
    status = (request.args.get("status") or "").strip().lower() or None
    try:
        rows = lead_service.list_leads(g.current_user, status=status)
    except ServiceError as e:
        return service_error(e)
    return jsonify({"ok": True, "data": [r.to_dict() for r in rows]}), 200
