from __future__ import annotations

from flask import Blueprint, Response, current_app, g, stream_with_context

from iskahomes.realtime.broker import conversations_channel, get_broker, messages_channel
from iskahomes.realtime.sse import HEARTBEAT_SECONDS, stream_subscription
from iskahomes.services import messaging_service as messaging
from iskahomes.services.errors import ServiceError
from iskahomes.utils.auth import require_auth
from iskahomes.utils.http import service_error

realtime_bp = Blueprint("realtime_bp", __name__, url_prefix="/api/realtime")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def _sse_response(channel: str):
    broker = get_broker()
    # seq is read before subscribing; events published in between surface as a gap.
    hello = {"channel": channel, "seq": broker.current_seq(channel)}
    subscription = broker.subscribe(channel)
    heartbeat = float(current_app.config.get("REALTIME_HEARTBEAT_SECONDS", HEARTBEAT_SECONDS))
    current_app.logger.info("realtime_subscribe channel=%s user_id=%s", channel, g.current_user.id)
    stream = stream_subscription(subscription, hello=hello, heartbeat_seconds=heartbeat)
    return Response(stream_with_context(stream), mimetype="text/event-stream", headers=SSE_HEADERS)


@realtime_bp.get("/conversations/<int:conversation_id>/stream")
@require_auth(allow_query_token=True)
def conversation_stream(conversation_id):
    try:
        conv = messaging.get_conversation_for(g.current_user, conversation_id)
    except ServiceError as e:
        return service_error(e)
    return _sse_response(messages_channel(conv.id))


@realtime_bp.get("/inbox/stream")
@require_auth(allow_query_token=True)
def inbox_stream():
    return _sse_response(conversations_channel(g.current_user.id))
