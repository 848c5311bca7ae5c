from __future__ import annotations

import json
import os
import threading
import time
import unittest

from iskahomes import create_app
from iskahomes.extensions import db
from iskahomes.models import User
from iskahomes.realtime.broker import ChangeEvent, MemoryBroker, build_broker, conversations_channel, messages_channel
from iskahomes.realtime.sse import format_comment, format_sse, stream_subscription
from iskahomes.utils.jwt_utils import create_token
from iskahomes.utils.rate_limit import _reset_rate_limit_state_for_tests


class MemoryBrokerTestCase(unittest.TestCase):
    def test_seq_is_per_channel_and_monotonic(self):
        broker = MemoryBroker()
        a1 = broker.publish("messages:1", "INSERT", "messages", new={"id": 1})
        a2 = broker.publish("messages:1", "UPDATE", "messages", new={"id": 1})
        b1 = broker.publish("messages:2", "INSERT", "messages", new={"id": 9})
        self.assertEqual((a1.seq, a2.seq, b1.seq), (1, 2, 1))
        self.assertEqual(broker.current_seq("messages:1"), 2)
        self.assertEqual(broker.current_seq("messages:3"), 0)

    def test_fan_out_and_unsubscribe(self):
        broker = MemoryBroker()
        first = broker.subscribe("conversations:5")
        second = broker.subscribe("conversations:5")
        other = broker.subscribe("conversations:6")
        broker.publish("conversations:5", "UPDATE", "conversations", new={"id": 3})

        self.assertEqual(first.get(timeout=0.1).new, {"id": 3})
        self.assertEqual(second.get(timeout=0.1).seq, 1)
        self.assertIsNone(other.get(timeout=0.01))

        first.close()
        second.close()
        self.assertEqual(broker.subscriber_count("conversations:5"), 0)
        broker.publish("conversations:5", "UPDATE", "conversations", new={"id": 3})
        self.assertIsNone(first.get(timeout=0.01))
        other.close()

    def test_concurrent_publishers_deliver_in_seq_order(self):
        broker = MemoryBroker()
        sub = broker.subscribe("messages:8")
        start = threading.Barrier(4)

        def publish_many():
            start.wait()
            for i in range(150):
                broker.publish("messages:8", "INSERT", "messages", new={"id": i})

        workers = [threading.Thread(target=publish_many) for _ in range(4)]
        for t in workers:
            t.start()
        for t in workers:
            t.join()

        seqs = []
        while True:
            event = sub.get(timeout=0.01)
            if event is None:
                break
            seqs.append(event.seq)
        sub.close()
        self.assertEqual(seqs, list(range(1, 601)))

    def test_change_event_json_roundtrip_keeps_fields(self):
        event = ChangeEvent(channel="messages:4", event_type="DELETE", table="messages", seq=7, old={"id": 2})
        back = ChangeEvent.from_dict(json.loads(event.to_json()))
        self.assertEqual(back, event)

    def test_channel_names(self):
        self.assertEqual(messages_channel("12"), "messages:12")
        self.assertEqual(conversations_channel(3), "conversations:3")

    def test_build_broker_defaults_to_memory(self):
        class _App:
            config = {"REALTIME_BACKEND": "", "REDIS_URL": ""}

        self.assertEqual(build_broker(_App()).backend, "memory")
        _App.config = {"REALTIME_BACKEND": "redis", "REDIS_URL": ""}
        with self.assertRaises(RuntimeError):
            build_broker(_App())


class SseFormattingTestCase(unittest.TestCase):
    def test_format_sse_frames(self):
        self.assertEqual(format_sse("change", {"a": 1}, event_id=3), 'id: 3\nevent: change\ndata: {"a":1}\n\n')
        self.assertEqual(format_sse(None, "line1\nline2"), "data: line1\ndata: line2\n\n")
        self.assertEqual(format_comment("heartbeat"), ": heartbeat\n\n")

    def test_stream_subscription_emits_hello_heartbeat_then_change(self):
        broker = MemoryBroker()
        sub = broker.subscribe("messages:1")
        frames = stream_subscription(sub, hello={"channel": "messages:1", "seq": 0}, heartbeat_seconds=0.01, max_events=1)
        self.assertTrue(next(frames).startswith("event: subscribed\n"))
        self.assertEqual(next(frames), ": heartbeat\n\n")
        broker.publish("messages:1", "INSERT", "messages", new={"id": 1})
        change = next(frames)
        self.assertTrue(change.startswith("id: 1\nevent: change\n"))
        with self.assertRaises(StopIteration):
            next(frames)
        self.assertTrue(sub.closed)
        self.assertEqual(broker.subscriber_count("messages:1"), 0)


class RealtimeStreamEndpointTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        cls.app = create_app({"TESTING": True, "REALTIME_BACKEND": "memory", "REALTIME_HEARTBEAT_SECONDS": 0.05})
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    def setUp(self):
        _reset_rate_limit_state_for_tests()

    def _user(self, user_type="property_seeker"):
        with self.app.app_context():
            u = User(name="Stream User", email=f"{user_type}-{time.time_ns()}@iskahomes.dev", user_type=user_type)
            u.set_password("password123")
            db.session.add(u)
            db.session.commit()
            return int(u.id), create_token(int(u.id), user_type)

    def _conversation(self):
        a_id, a_token = self._user()
        b_id, b_token = self._user("agent")
        res = self.client.post("/api/conversations", headers={"Authorization": f"Bearer {a_token}"}, json={"otherUserId": b_id})
        return res.get_json()["conversationId"], a_token, b_token

    def test_stream_requires_participant_token(self):
        cid, _, _ = self._conversation()
        _, stranger = self._user()
        self.assertEqual(self.client.get(f"/api/realtime/conversations/{cid}/stream").status_code, 401)
        res = self.client.get(f"/api/realtime/conversations/{cid}/stream", query_string={"token": stranger})
        self.assertEqual(res.status_code, 403)
        res = self.client.get("/api/realtime/conversations/987654/stream", query_string={"token": stranger})
        self.assertEqual(res.status_code, 404)

    def test_conversation_stream_delivers_subscribed_then_change(self):
        cid, a_token, _ = self._conversation()
        res = self.client.get(f"/api/realtime/conversations/{cid}/stream", query_string={"token": a_token}, buffered=False)
        try:
            self.assertEqual(res.status_code, 200)
            self.assertTrue(res.mimetype.startswith("text/event-stream"))
            self.assertEqual(res.headers.get("Cache-Control"), "no-cache")
            chunks = res.iter_encoded()
            hello = next(chunks).decode("utf-8")
            self.assertTrue(hello.startswith("event: subscribed\n"))
            self.assertIn(f'"channel":"messages:{cid}"', hello)

            broker = self.app.extensions["iskahomes_broker"]
            self.assertEqual(broker.subscriber_count(messages_channel(cid)), 1)
            broker.publish(messages_channel(cid), "INSERT", "messages", new={"id": 42, "conversation_id": cid})

            frame = ""
            for _ in range(20):
                frame = next(chunks).decode("utf-8")
                if not frame.startswith(":"):
                    break
            self.assertTrue(frame.startswith("id: 1\nevent: change\n"))
            self.assertIn('"id":42', frame)
        finally:
            res.close()

    def test_inbox_stream_accepts_query_token(self):
        uid, token = self._user()
        res = self.client.get("/api/realtime/inbox/stream", query_string={"token": token}, buffered=False)
        try:
            self.assertEqual(res.status_code, 200)
            hello = next(res.iter_encoded()).decode("utf-8")
            self.assertIn(f'"channel":"conversations:{uid}"', hello)
            self.assertIn('"seq":0', hello)
        finally:
            res.close()


if __name__ == "__main__":
    unittest.main()
