from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError

from iskahomes.extensions import db
from iskahomes.models import Conversation, Listing, Message, User
from iskahomes.models.messaging import CONVERSATION_STATUSES, MESSAGE_TYPES
from iskahomes.realtime.events import publish_conversation_change, publish_message_change
from iskahomes.services.errors import ServiceError
from iskahomes.services.lead_service import promote_leads_on_contact
from iskahomes.utils.auth import LISTER_TYPES
from iskahomes.utils.clock import utcnow
from iskahomes.utils.events import log_event

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 5000
SEND_LIMIT_PER_MINUTE = 30


def _optional_int(value, field: str) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ServiceError("VALIDATION_FAILED", f"{field} must be an integer", 400)


def _context_filter(column, value):
    return column.is_(None) if value is None else column == value


def find_or_create_conversation(
    me: User,
    other_user_id,
    *,
    other_user_type: str | None = None,
    listing_id=None,
    development_id=None,
    conversation_type: str | None = None,
    subject: str | None = None,
) -> tuple[Conversation, bool]:
    other_id = _optional_int(other_user_id, "otherUserId")
    if other_id is None:
        raise ServiceError("VALIDATION_FAILED", "otherUserId is required", 400)
    if other_id == int(me.id):
        raise ServiceError("VALIDATION_FAILED", "Cannot start a conversation with yourself", 400)
    other = db.session.get(User, other_id)
    if other is None:
        raise ServiceError("NOT_FOUND", "User not found", 404)

    listing_id = _optional_int(listing_id, "listingId")
    development_id = _optional_int(development_id, "developmentId")
    if listing_id is not None and db.session.get(Listing, listing_id) is None:
        raise ServiceError("NOT_FOUND", "Listing not found", 404)

    pair = or_(
        and_(Conversation.user1_id == int(me.id), Conversation.user2_id == other_id),
        and_(Conversation.user1_id == other_id, Conversation.user2_id == int(me.id)),
    )
    existing = (
        Conversation.query.filter(pair)
        .filter(_context_filter(Conversation.listing_id, listing_id))
        .filter(_context_filter(Conversation.development_id, development_id))
        .order_by(Conversation.id.asc())
        .first()
    )
    if existing:
        return existing, False

    conv = Conversation(
        user1_id=int(me.id),
        user1_type=me.user_type or "property_seeker",
        user2_id=other_id,
        user2_type=(other_user_type or other.user_type or "property_seeker"),
        listing_id=listing_id,
        development_id=development_id,
        conversation_type=(conversation_type or "general_inquiry").strip()[:32] or "general_inquiry",
        subject=(subject or "").strip()[:255] or None,
        status="active",
    )
    db.session.add(conv)
    db.session.flush()
    log_event(
        "conversation_created",
        actor_user_id=me.id,
        subject_type="conversation",
        subject_id=conv.id,
        metadata={"listing_id": listing_id, "development_id": development_id},
    )
    db.session.commit()
    publish_conversation_change("INSERT", conv)
    return conv, True


def get_conversation_for(user: User, conversation_id) -> Conversation:
    cid = _optional_int(conversation_id, "conversation_id")
    if cid is None:
        raise ServiceError("VALIDATION_FAILED", "conversation_id is required", 400)
    conv = db.session.get(Conversation, cid)
    if conv is None:
        raise ServiceError("NOT_FOUND", "Conversation not found", 404)
    if not conv.is_participant(user.id):
        raise ServiceError("FORBIDDEN", "Not a participant in this conversation", 403)
    return conv


def conversation_payload(conv: Conversation, user: User) -> dict:
    data = conv.to_dict()
    other = db.session.get(User, conv.other_user_id(user.id))
    data["other_user"] = other.public_dict() if other else None
    data["my_unread_count"] = conv.unread_for(user.id)
    if conv.listing_id is not None:
        listing = db.session.get(Listing, conv.listing_id)
        data["listing"] = listing.summary_dict() if listing else None
    else:
        data["listing"] = None
    return data


def list_conversations(user: User, *, limit: int = 20, offset: int = 0) -> tuple[list[Conversation], int]:
    q = Conversation.query.filter(or_(Conversation.user1_id == int(user.id), Conversation.user2_id == int(user.id)))
    total = q.count()
    rows = (
        q.order_by(
            Conversation.last_message_at.is_(None),
            Conversation.last_message_at.desc(),
            Conversation.id.desc(),
        )
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


def update_conversation_status(user: User, conversation_id, status: str) -> Conversation:
    conv = get_conversation_for(user, conversation_id)
    value = (status or "").strip().lower()
    if value not in CONVERSATION_STATUSES:
        raise ServiceError("VALIDATION_FAILED", "Invalid status", 400)
    old = conv.to_dict()
    conv.status = value
    conv.updated_at = utcnow()
    db.session.commit()
    publish_conversation_change("UPDATE", conv, old=old)
    return conv


def delete_conversation(user: User, conversation_id) -> None:
    conv = get_conversation_for(user, conversation_id)
    cid = int(conv.id)
    participants = conv.participant_ids()
    old = conv.to_dict()
    Message.query.filter(Message.conversation_id == cid).delete(synchronize_session=False)
    db.session.delete(conv)
    db.session.commit()
    publish_conversation_change("DELETE", old=old, participant_ids=participants)


def mark_conversation_read(user: User, conversation_id) -> int:
    conv = get_conversation_for(user, conversation_id)
    now = utcnow()
    rows = (
        Message.query.filter(
            Message.conversation_id == conv.id,
            Message.receiver_id == int(user.id),
            Message.is_read.is_(False),
            Message.is_deleted.is_(False),
        )
        .order_by(Message.id.asc())
        .all()
    )
    for msg in rows:
        msg.is_read = True
        msg.read_at = now
        msg.updated_at = now
    conv_changed = conv.unread_for(user.id) != 0
    if int(conv.user1_id) == int(user.id):
        conv.user1_unread_count = 0
    else:
        conv.user2_unread_count = 0
    db.session.commit()
    for msg in rows:
        publish_message_change("UPDATE", msg)
    if conv_changed or rows:
        publish_conversation_change("UPDATE", conv)
    return len(rows)


def list_messages(user: User, conversation_id, *, limit: int = 50, offset: int = 0) -> tuple[list[Message], int]:
    """Newest-first offset page, returned oldest-first for display."""
    conv = get_conversation_for(user, conversation_id)
    q = Message.query.filter(Message.conversation_id == conv.id, Message.is_deleted.is_(False))
    total = q.count()
    rows = q.order_by(Message.created_at.desc(), Message.id.desc()).offset(offset).limit(limit).all()
    rows.reverse()
    return rows, total


def messages_since(user: User, conversation_id, since: datetime) -> tuple[list[Message], str]:
    """Rows created or updated after ``since``, soft-deleted ones included."""
    conv = get_conversation_for(user, conversation_id)
    rows = (
        Message.query.filter(
            Message.conversation_id == conv.id,
            or_(Message.created_at > since, Message.updated_at > since),
        )
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )
    cursor = since
    for msg in rows:
        stamp = msg.updated_at or msg.created_at
        if stamp and stamp > cursor:
            cursor = stamp
    return rows, cursor.isoformat()


def send_message(
    user: User,
    conversation_id,
    message_text,
    *,
    message_type: str | None = None,
    attachments=None,
    reply_to_message_id=None,
    client_ref: str | None = None,
) -> tuple[Message, bool]:
    conv = get_conversation_for(user, conversation_id)
    if conv.status != "active":
        raise ServiceError("CONVERSATION_INACTIVE", "Conversation is not active", 403)

    text = (message_text or "").strip() if isinstance(message_text, str) else ""
    if not text:
        raise ServiceError("VALIDATION_FAILED", "messageText is required", 400)
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ServiceError("VALIDATION_FAILED", f"messageText must be at most {MAX_MESSAGE_LENGTH} characters", 400)

    mtype = (message_type or "text").strip().lower()
    if mtype not in MESSAGE_TYPES:
        raise ServiceError("VALIDATION_FAILED", "Invalid messageType", 400)
    if attachments is not None and not isinstance(attachments, list):
        raise ServiceError("VALIDATION_FAILED", "attachments must be a list", 400)

    ref = (client_ref or "").strip()[:64] or None
    if ref:
        existing = Message.query.filter_by(sender_id=int(user.id), client_ref=ref).first()
        if existing:
            return existing, True

    reply_to = _optional_int(reply_to_message_id, "replyToMessageId")
    if reply_to is not None:
        parent = db.session.get(Message, reply_to)
        if parent is None or int(parent.conversation_id) != int(conv.id):
            raise ServiceError("VALIDATION_FAILED", "replyToMessageId must belong to this conversation", 400)

    receiver_id = conv.other_user_id(user.id)
    receiver_type = conv.user2_type if int(conv.user1_id) == int(user.id) else conv.user1_type
    now = utcnow()
    msg = Message(
        conversation_id=conv.id,
        sender_id=int(user.id),
        sender_type=user.user_type or "property_seeker",
        receiver_id=receiver_id,
        receiver_type=receiver_type,
        message_text=text,
        message_type=mtype,
        attachments=attachments or [],
        reply_to_message_id=reply_to,
        client_ref=ref,
        created_at=now,
        updated_at=now,
    )
    db.session.add(msg)

    conv.last_message_at = now
    conv.last_message_text = text[:500]
    conv.last_message_sender_id = int(user.id)
    conv.last_message_sender_type = msg.sender_type
    if int(conv.user1_id) == receiver_id:
        conv.user1_unread_count = int(conv.user1_unread_count or 0) + 1
    else:
        conv.user2_unread_count = int(conv.user2_unread_count or 0) + 1
    conv.updated_at = now

    try:
        db.session.commit()
    except IntegrityError:
        # Concurrent retry with the same clientRef won the insert.
        db.session.rollback()
        if ref:
            existing = Message.query.filter_by(sender_id=int(user.id), client_ref=ref).first()
            if existing:
                return existing, True
        raise

    publish_message_change("INSERT", msg)
    publish_conversation_change("UPDATE", conv)

    if (user.user_type or "") in LISTER_TYPES and receiver_type == "property_seeker":
        promote_leads_on_contact(lister_id=user.id, seeker_id=receiver_id, listing_id=conv.listing_id)
    return msg, False


def _own_message(user: User, message_id) -> Message:
    mid = _optional_int(message_id, "message_id")
    msg = db.session.get(Message, mid) if mid is not None else None
    if msg is None or msg.is_deleted:
        raise ServiceError("NOT_FOUND", "Message not found", 404)
    if int(msg.sender_id) != int(user.id):
        raise ServiceError("FORBIDDEN", "Only the sender can change this message", 403)
    return msg


def edit_message(user: User, message_id, message_text) -> Message:
    msg = _own_message(user, message_id)
    text = (message_text or "").strip() if isinstance(message_text, str) else ""
    if not text:
        raise ServiceError("VALIDATION_FAILED", "messageText is required", 400)
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ServiceError("VALIDATION_FAILED", f"messageText must be at most {MAX_MESSAGE_LENGTH} characters", 400)
    old = msg.to_dict()
    msg.message_text = text
    msg.is_edited = True
    msg.updated_at = utcnow()
    db.session.commit()
    publish_message_change("UPDATE", msg, old=old)
    return msg


def delete_message(user: User, message_id) -> Message:
    msg = _own_message(user, message_id)
    old = msg.to_dict()
    msg.is_deleted = True
    msg.updated_at = utcnow()
    db.session.commit()
    publish_message_change("UPDATE", msg, old=old)
    return msg


def recent_unread_conversations(user: User, *, limit: int = 7) -> list[dict]:
    uid = int(user.id)
    rows = (
        Conversation.query.filter(
            Conversation.status == "active",
            or_(
                and_(Conversation.user1_id == uid, Conversation.user1_unread_count > 0),
                and_(Conversation.user2_id == uid, Conversation.user2_unread_count > 0),
            ),
        )
        .order_by(Conversation.last_message_at.is_(None), Conversation.last_message_at.desc(), Conversation.id.desc())
        .limit(limit)
        .all()
    )
    out = []
    for conv in rows:
        other = db.session.get(User, conv.other_user_id(uid))
        listing = db.session.get(Listing, conv.listing_id) if conv.listing_id is not None else None
        out.append(
            {
                "conversationId": conv.id,
                "otherUser": {
                    "id": other.id if other else None,
                    "name": other.name if other else "",
                    "profile_image": other.profile_image_url if other else None,
                    "type": other.user_type if other else None,
                },
                "listing": listing.summary_dict() if listing else None,
                "lastMessage": conv.last_message_text or "",
                "lastMessageAt": conv.last_message_at.isoformat() if conv.last_message_at else None,
                "isSender": conv.last_message_sender_id == uid,
                "unreadCount": conv.unread_for(uid),
            }
        )
    return out
