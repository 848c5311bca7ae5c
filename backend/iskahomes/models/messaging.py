from iskahomes.extensions import db
from iskahomes.utils.clock import utcnow


CONVERSATION_STATUSES = ("active", "archived", "blocked")
MESSAGE_TYPES = ("text", "image", "file", "system")


def _iso(value):
    return value.isoformat() if value else None


class Conversation(db.Model):
    __tablename__ = "conversations"

    id = db.Column(db.Integer, primary_key=True)

    user1_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    user1_type = db.Column(db.String(32), nullable=False, default="property_seeker")
    user2_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    user2_type = db.Column(db.String(32), nullable=False, default="property_seeker")

    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id", ondelete="SET NULL"), nullable=True, index=True)
    development_id = db.Column(db.Integer, nullable=True, index=True)

    conversation_type = db.Column(db.String(32), nullable=False, default="general_inquiry")
    subject = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="active", index=True)

    last_message_at = db.Column(db.DateTime, nullable=True, index=True)
    last_message_text = db.Column(db.Text, nullable=True)
    last_message_sender_id = db.Column(db.Integer, nullable=True)
    last_message_sender_type = db.Column(db.String(32), nullable=True)

    user1_unread_count = db.Column(db.Integer, nullable=False, default=0)
    user2_unread_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def participant_ids(self) -> tuple[int, int]:
        return int(self.user1_id), int(self.user2_id)

    def is_participant(self, user_id: int) -> bool:
        return int(user_id) in self.participant_ids()

    def other_user_id(self, user_id: int) -> int:
        return int(self.user2_id) if int(self.user1_id) == int(user_id) else int(self.user1_id)

    def unread_for(self, user_id: int) -> int:
        if int(self.user1_id) == int(user_id):
            return int(self.user1_unread_count or 0)
        return int(self.user2_unread_count or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user1_id": self.user1_id,
            "user1_type": self.user1_type,
            "user2_id": self.user2_id,
            "user2_type": self.user2_type,
            "listing_id": self.listing_id,
            "development_id": self.development_id,
            "conversation_type": self.conversation_type,
            "subject": self.subject or "",
            "status": self.status,
            "last_message_at": _iso(self.last_message_at),
            "last_message_text": self.last_message_text or "",
            "last_message_sender_id": self.last_message_sender_id,
            "last_message_sender_type": self.last_message_sender_type,
            "user1_unread_count": int(self.user1_unread_count or 0),
            "user2_unread_count": int(self.user2_unread_count or 0),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Message(db.Model):
    __tablename__ = "messages"
    __table_args__ = (
        db.UniqueConstraint("sender_id", "client_ref", name="uq_messages_sender_client_ref"),
    )

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(
        db.Integer,
        db.ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    sender_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    sender_type = db.Column(db.String(32), nullable=False)
    receiver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    receiver_type = db.Column(db.String(32), nullable=False)

    message_text = db.Column(db.Text, nullable=False)
    message_type = db.Column(db.String(16), nullable=False, default="text")
    attachments = db.Column(db.JSON, nullable=True)
    reply_to_message_id = db.Column(db.Integer, db.ForeignKey("messages.id", ondelete="SET NULL"), nullable=True)
    client_ref = db.Column(db.String(64), nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime, nullable=True)
    is_edited = db.Column(db.Boolean, nullable=False, default=False)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "sender_type": self.sender_type,
            "receiver_id": self.receiver_id,
            "receiver_type": self.receiver_type,
            "message_text": self.message_text or "",
            "message_type": self.message_type or "text",
            "attachments": self.attachments or [],
            "reply_to_message_id": self.reply_to_message_id,
            "client_ref": self.client_ref,
            "is_read": bool(self.is_read),
            "read_at": _iso(self.read_at),
            "is_edited": bool(self.is_edited),
            "is_deleted": bool(self.is_deleted),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
