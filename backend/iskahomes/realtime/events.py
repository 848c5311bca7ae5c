from __future__ import annotations

import logging

import redis

from iskahomes.realtime.broker import conversations_channel, get_broker, messages_channel

logger = logging.getLogger(__name__)


def _publish(channel: str, event_type: str, table: str, *, new=None, old=None):
    try:
        return get_broker().publish(channel, event_type, table, new=new, old=old)
    except redis.RedisError:
        # Rows are already committed; clients recover through polling.
        logger.exception("realtime_publish_failed channel=%s event=%s", channel, event_type)
        return None


def publish_message_change(event_type: str, message=None, *, old: dict | None = None, conversation_id: int | None = None):
    new = message.to_dict() if message is not None and event_type != "DELETE" else None
    cid = conversation_id if conversation_id is not None else (message.conversation_id if message is not None else None)
    if cid is None:
        return None
    return _publish(messages_channel(cid), event_type, "messages", new=new, old=old)


def publish_conversation_change(event_type: str, conversation=None, *, old: dict | None = None, participant_ids=None):
    new = conversation.to_dict() if conversation is not None and event_type != "DELETE" else None
    ids = participant_ids
    if ids is None and conversation is not None:
        ids = conversation.participant_ids()
    events = []
    for uid in sorted(set(int(x) for x in (ids or []))):
        events.append(_publish(conversations_channel(uid), event_type, "conversations", new=new, old=old))
    return events
