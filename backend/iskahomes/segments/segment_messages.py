from __future__ import annotations

from datetime import datetime, timezone

from flask import Blueprint, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from iskahomes.extensions import db
from iskahomes.services import messaging_service as messaging
from iskahomes.services.errors import ServiceError
from iskahomes.utils.auth import require_auth
from iskahomes.utils.http import db_failure, error_response, get_request_payload, pagination_args, rate_limit_response, service_error

messages_bp = Blueprint("messages_bp", __name__, url_prefix="/api/messages")


def parse_since(raw: str) -> datetime:
    """ISO-8601 to naive UTC; a trailing ``Z`` is accepted."""
    text = (raw or "").strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@messages_bp.get("")
@require_auth()
def list_messages():
    u = g.current_user
    conversation_id = request.args.get("conversation_id")
    if not conversation_id:
        return error_response("VALIDATION_FAILED", "conversation_id is required", 400)

    since_raw = request.args.get("since")
    try:
        if since_raw:
            try:
                since = parse_since(since_raw)
            except ValueError:
                return error_response("VALIDATION_FAILED", "since must be an ISO-8601 timestamp", 400)
            rows, cursor = messaging.messages_since(u, conversation_id, since)
            return jsonify({"ok": True, "data": [m.to_dict() for m in rows], "cursor": cursor}), 200

        limit, offset = pagination_args(50)
        rows, total = messaging.list_messages(u, conversation_id, limit=limit, offset=offset)
    except ServiceError as e:
        return service_error(e)
    return jsonify({
        "ok": True,
        "data": [m.to_dict() for m in rows],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + limit < total,
        },
    }), 200


@messages_bp.post("")
@require_auth()
def send_message():
    u = g.current_user
    rl = rate_limit_response("message_send", limit=messaging.SEND_LIMIT_PER_MINUTE, window_seconds=60, user_id=u.id, per_ip=False)
    if rl is not None:
        return rl
    data = get_request_payload()
    try:
        msg, duplicate = messaging.send_message(
            u,
            data.get("conversationId"),
            data.get("messageText"),
            message_type=data.get("messageType"),
            attachments=data.get("attachments"),
            reply_to_message_id=data.get("replyToMessageId"),
            client_ref=data.get("clientRef"),
        )
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    except SQLAlchemyError as e:
        db.session.rollback()
        return db_failure(e, "send_message")
    return jsonify({"ok": True, "data": msg.to_dict(), "duplicate": duplicate}), 200 if duplicate else 201


@messages_bp.put("/<int:message_id>")
@require_auth()
def edit_message(message_id):
    data = get_request_payload()
    try:
        msg = messaging.edit_message(g.current_user, message_id, data.get("messageText"))
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    return jsonify({"ok": True, "data": msg.to_dict()}), 200


@messages_bp.delete("/<int:message_id>")
@require_auth()
def delete_message(message_id):
    try:
        msg = messaging.delete_message(g.current_user, message_id)
    except ServiceError as e:
        db.session.rollback()
        return service_error(e)
    return jsonify({"ok": True, "data": msg.to_dict()}), 200


@messages_bp.get("/recent")
@require_auth()
def recent_messages():
    limit, _offset = pagination_args(7, max_limit=50)
    rows = messaging.recent_unread_conversations(g.current_user, limit=limit)
    return jsonify({"ok": True, "data": rows}), 200
