from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from iskahomes.extensions import db
from iskahomes.services import messaging_service as messaging
from iskahomes.services.errors import ServiceError
from iskahomes.utils.auth import require_auth
from iskahomes.utils.http import db_failure, get_request_payload, pagination_args, rate_limit_response, service_error

conversations_bp = Blueprint("conversations_bp", __name__, url_prefix="/api/conversations")


@conversations_bp.post("")
@require_auth()
def create_conversation():
    u = g.current_user
    data = get_request_payload()
    try:
        conv, created = messaging.find_or_create_conversation(
            u,
            data.get("otherUserId"),
            other_user_type=data.get("otherUserType"),
            listing_id=data.get("listingId"),
            development_id=data.get("developmentId"),
            conversation_type=data.get("conversationType"),
            subject=data.get("subject"),
        )
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "create_conversation")

    body = {"success": True, "ok": True, "conversationId": conv.id, "created": created}
    first = data.get("firstMessage")
    if isinstance(first, str) and first.strip():
        rl = rate_limit_response("message_send", limit=messaging.SEND_LIMIT_PER_MINUTE, window_seconds=60, user_id=u.id, per_ip=False)
        if rl is not None:
            return rl
        try:
            msg, _duplicate = messaging.send_message(u, conv.id, first, client_ref=data.get("clientRef"))
            body["message"] = msg.to_dict()
        except ServiceError as e:
            db.session.rollback()
            current_app.logger.info("first_message_rejected conversation_id=%s error=%s", conv.id, e.code)
            body["messageError"] = e.message
    return jsonify(body), 201 if created else 200


@conversations_bp.get("")
@require_auth()
def list_conversations():
    u = g.current_user
    limit, offset = pagination_args(20)
    rows, total = messaging.list_conversations(u, limit=limit, offset=offset)
    return jsonify({
        "ok": True,
        "data": [messaging.conversation_payload(c, u) for c in rows],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + limit < total,
        },
    }), 200


@conversations_bp.get("/<int:conversation_id>")
@require_auth()
def get_conversation(conversation_id):
    u = g.current_user
    try:
        conv = messaging.get_conversation_for(u, conversation_id)
    except ServiceError as e:
        return service_error(e)
    return jsonify({"ok": True, "data": messaging.conversation_payload(conv, u)}), 200


@conversations_bp.put("/<int:conversation_id>")
@require_auth()
def update_conversation(conversation_id):
    u = g.current_user
    data = get_request_payload()
    try:
        conv = messaging.update_conversation_status(u, conversation_id, data.get("status"))
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    return jsonify({"ok": True, "data": messaging.conversation_payload(conv, u)}), 200


@conversations_bp.delete("/<int:conversation_id>")
@require_auth()
def delete_conversation(conversation_id):
    try:
        messaging.delete_conversation(g.current_user, conversation_id)
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "delete_conversation")
    return jsonify({"ok": True}), 200


@conversations_bp.post("/<int:conversation_id>/read")
@require_auth()
def mark_read(conversation_id):
    try:
        count = messaging.mark_conversation_read(g.current_user, conversation_id)
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    return jsonify({"ok": True, "marked": count}), 200
