from __future__ import annotations

import math

from flask import Blueprint, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from iskahomes.extensions import db
from iskahomes.services import listing_service
from iskahomes.services.errors import ServiceError
from iskahomes.utils.auth import LISTER_TYPES, require_auth
from iskahomes.utils.http import db_failure, service_error, step_payload

listings_bp = Blueprint("listings_bp", __name__, url_prefix="/api")


def _public_payload(listing, related=None) -> dict:
    data = listing.to_dict()
    if related is not None:
        data["related_listings"] = [r.to_dict() for r in related]
    return data


@listings_bp.post("/listings/steps/<step>")
@require_auth(types=LISTER_TYPES)
def create_listing_step(step):
    try:
        listing = listing_service.create_listing(g.current_user, step, step_payload(), request.files)
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "create_listing")
    return jsonify({"ok": True, "data": listing.to_dict(include_private=True), "step": step}), 201


@listings_bp.put("/listings/<int:listing_id>/steps/<step>")
@require_auth(types=LISTER_TYPES)
def update_listing_step(listing_id, step):
    try:
        listing = listing_service.update_listing_step(g.current_user, listing_id, step, step_payload(), request.files)
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "update_listing")
    return jsonify({"ok": True, "data": listing.to_dict(include_private=True), "step": step}), 200


@listings_bp.post("/listings/<int:listing_id>/publish")
@require_auth(types=LISTER_TYPES)
def publish_listing(listing_id):
    try:
        listing = listing_service.publish_listing(g.current_user, listing_id)
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    return jsonify({"ok": True, "data": listing.to_dict(include_private=True)}), 200


@listings_bp.get("/listings")
def search_listings():
    try:
        rows, total, page, limit = listing_service.search_listings(request.args)
    except ServiceError as e:
        return service_error(e)
    return jsonify({
        "ok": True,
        "data": [r.to_dict() for r in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": int(math.ceil(total / float(limit))) if total else 0,
        },
    }), 200


@listings_bp.get("/listings/<int:listing_id>")
def get_listing(listing_id):
    try:
        listing, related = listing_service.get_public_listing(listing_id=listing_id)
    except ServiceError as e:
        return service_error(e)
    return jsonify({"ok": True, "data": _public_payload(listing, related)}), 200


@listings_bp.get("/listings/slug/<slug>")
def get_listing_by_slug(slug):
    try:
        listing, related = listing_service.get_public_listing(slug=slug)
    except ServiceError as e:
        return service_error(e)
    return jsonify({"ok": True, "data": _public_payload(listing, related)}), 200


@listings_bp.get("/user-listings")
@require_auth(types=LISTER_TYPES)
def user_listings():
    status = (request.args.get("listing_status") or "").strip().lower() or None
    try:
        rows = listing_service.user_listings(g.current_user, listing_status=status)
    except ServiceError as e:
        return service_error(e)
    return jsonify({"ok": True, "data": [r.to_dict(include_private=True) for r in rows]}), 200


@listings_bp.delete("/listings/<int:listing_id>")
@require_auth(types=LISTER_TYPES)
def delete_listing(listing_id):
    try:
        removed = listing_service.delete_listing(g.current_user, listing_id)
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "delete_listing")
    return jsonify({"ok": True, "deletedFiles": removed}), 200
