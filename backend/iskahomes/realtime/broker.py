from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass, field

import redis
from flask import current_app

from iskahomes.utils.clock import utcnow

logger = logging.getLogger(__name__)

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")


def messages_channel(conversation_id: int) -> str:
    return f"messages:{int(conversation_id)}"


def conversations_channel(user_id: int) -> str:
    return f"conversations:{int(user_id)}"


@dataclass(frozen=True)
class ChangeEvent:
    channel: str
    event_type: str
    table: str
    seq: int
    new: dict | None = None
    old: dict | None = None
    commit_ts: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self) -> dict:
        return {
            "channel": self.channel,
            "event_type": self.event_type,
            "table": self.table,
            "seq": int(self.seq),
            "new": self.new,
            "old": self.old,
            "commit_ts": self.commit_ts,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict) -> "ChangeEvent":
        return cls(
            channel=str(data.get("channel") or ""),
            event_type=str(data.get("event_type") or ""),
            table=str(data.get("table") or ""),
            seq=int(data.get("seq") or 0),
            new=data.get("new"),
            old=data.get("old"),
            commit_ts=str(data.get("commit_ts") or ""),
        )


class BrokerSubscription:
    """A single subscriber's view of one channel."""

    def __init__(self, broker, channel: str):
        self.broker = broker
        self.channel = channel
        self.closed = False

    def get(self, timeout: float | None = None) -> ChangeEvent | None:
        raise NotImplementedError

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.broker.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class _QueueSubscription(BrokerSubscription):
    def __init__(self, broker, channel: str, maxsize: int = 1000):
        super().__init__(broker, channel)
        self.queue: "queue.Queue[ChangeEvent]" = queue.Queue(maxsize=maxsize)

    def get(self, timeout: float | None = None) -> ChangeEvent | None:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None


class MemoryBroker:
    """In-process fan-out. Suitable for a single worker and for tests."""

    backend = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._seq: dict[str, int] = {}
        self._subs: dict[str, list[_QueueSubscription]] = {}

    def current_seq(self, channel: str) -> int:
        with self._lock:
            return int(self._seq.get(channel, 0))

    def publish(self, channel: str, event_type: str, table: str, *, new: dict | None = None, old: dict | None = None) -> ChangeEvent:
        with self._lock:
            seq = self._seq.get(channel, 0) + 1
            self._seq[channel] = seq
            event = ChangeEvent(channel=channel, event_type=event_type, table=table, seq=seq, new=new, old=old)
            # Fan out under the lock so every queue receives events in seq order.
            for sub in self._subs.get(channel, []):
                try:
                    sub.queue.put_nowait(event)
                except queue.Full:
                    logger.warning("realtime_subscriber_overflow channel=%s seq=%s", channel, seq)
        return event

    def subscribe(self, channel: str) -> BrokerSubscription:
        sub = _QueueSubscription(self, channel)
        with self._lock:
            self._subs.setdefault(channel, []).append(sub)
        return sub

    def unsubscribe(self, sub: BrokerSubscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.channel, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subs.pop(sub.channel, None)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subs.get(channel, []))


class _RedisSubscription(BrokerSubscription):
    def __init__(self, broker: "RedisBroker", channel: str):
        super().__init__(broker, channel)
        self.pubsub = broker.client.pubsub(ignore_subscribe_messages=True)
        self.pubsub.subscribe(broker.topic(channel))

    def get(self, timeout: float | None = None) -> ChangeEvent | None:
        msg = self.pubsub.get_message(timeout=timeout or 0.0)
        if not msg or msg.get("type") != "message":
            return None
        raw = msg.get("data")
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return ChangeEvent.from_dict(json.loads(raw))
        except (TypeError, ValueError):
            logger.warning("realtime_bad_payload channel=%s", self.channel)
            return None


class RedisBroker:
    """Redis pub/sub fan-out; ``seq`` comes from an INCR counter per channel."""

    backend = "redis"

    def __init__(self, client, *, prefix: str = "iska:rt"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisBroker":
        client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=2.0, health_check_interval=30)
        return cls(client, **kwargs)

    def topic(self, channel: str) -> str:
        return f"{self.prefix}:{channel}"

    def _seq_key(self, channel: str) -> str:
        return f"{self.prefix}:seq:{channel}"

    def current_seq(self, channel: str) -> int:
        raw = self.client.get(self._seq_key(channel))
        return int(raw or 0)

    def publish(self, channel: str, event_type: str, table: str, *, new: dict | None = None, old: dict | None = None) -> ChangeEvent:
        seq = int(self.client.incr(self._seq_key(channel)))
        event = ChangeEvent(channel=channel, event_type=event_type, table=table, seq=seq, new=new, old=old)
        self.client.publish(self.topic(channel), event.to_json())
        return event

    def subscribe(self, channel: str) -> BrokerSubscription:
        return _RedisSubscription(self, channel)

    def unsubscribe(self, sub: BrokerSubscription) -> None:
        pubsub = getattr(sub, "pubsub", None)
        if pubsub is None:
            return
        try:
            pubsub.unsubscribe()
            pubsub.close()
        except redis.RedisError:
            logger.warning("realtime_unsubscribe_failed channel=%s", sub.channel)


def build_broker(app):
    backend = (app.config.get("REALTIME_BACKEND") or "").strip().lower()
    redis_url = (app.config.get("REDIS_URL") or "").strip()
    if not backend:
        backend = "redis" if redis_url else "memory"
    if backend == "redis":
        if not redis_url:
            raise RuntimeError("REALTIME_BACKEND=redis requires REDIS_URL")
        return RedisBroker.from_url(redis_url)
    return MemoryBroker()


def init_broker(app):
    broker = build_broker(app)
    app.extensions["iskahomes_broker"] = broker
    app.logger.info("realtime_broker backend=%s", broker.backend)
    return broker


def get_broker():
    return current_app.extensions["iskahomes_broker"]
