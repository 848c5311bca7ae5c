from __future__ import annotations

import json

HEARTBEAT_SECONDS = 15.0


def format_sse(event: str | None, data, *, event_id: int | str | None = None) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    if event:
        lines.append(f"event: {event}")
    payload = data if isinstance(data, str) else json.dumps(data, separators=(",", ":"))
    for chunk in payload.splitlines() or [""]:
        lines.append(f"data: {chunk}")
    return "\n".join(lines) + "\n\n"


def format_comment(text: str) -> str:
    return f": {text}\n\n"


def stream_subscription(subscription, *, hello: dict, heartbeat_seconds: float = HEARTBEAT_SECONDS, max_events: int | None = None):
    """Yield SSE frames from a broker subscription until the client goes away."""
    sent = 0
    try:
        yield format_sse("subscribed", hello)
        while True:
            event = subscription.get(timeout=heartbeat_seconds)
            if event is None:
                yield format_comment("heartbeat")
                continue
            yield format_sse("change", event.to_dict(), event_id=event.seq)
            sent += 1
            if max_events is not None and sent >= max_events:
                return
    finally:
        subscription.close()
