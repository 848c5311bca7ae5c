from __future__ import annotations

import threading
import time
import unittest

import requests

from iskahomes.realtime.api_client import ApiError, MessagingApi, SseEvent, parse_sse_lines
from iskahomes.realtime.sync import ThreadSync


def _msg(mid, at, text="hi", **extra):
    row = {"id": mid, "conversation_id": 1, "sender_id": 2, "message_text": text, "created_at": at, "updated_at": at, "is_deleted": False}
    row.update(extra)
    return row


class FakeStream:
    def __init__(self, events):
        self._events = list(events)
        self.closed = False

    def events(self):
        for event in self._events:
            if self.closed:
                return
            yield event

    def close(self):
        self.closed = True


class FakeApi:
    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.since_rows: list[dict] = []
        self.since_cursor = None
        self.streams: list[FakeStream] = []
        self.list_calls = 0
        self.since_calls = 0
        self.read_calls = 0
        self.fail_send = False
        self.fail_since = False
        self._lock = threading.Lock()

    def list_messages(self, conversation_id, *, limit=50, offset=0):
        with self._lock:
            self.list_calls += 1
        newest_first = list(reversed(self.rows))
        page = list(reversed(newest_first[offset:offset + limit]))
        return page, {"total": len(self.rows), "hasMore": offset + limit < len(self.rows)}

    def messages_since(self, conversation_id, since):
        with self._lock:
            self.since_calls += 1
        if self.fail_since:
            raise ApiError(0, "NETWORK_ERROR", "offline")
        return list(self.since_rows), self.since_cursor or since

    def mark_read(self, conversation_id):
        self.read_calls += 1
        return 0

    def send_message(self, conversation_id, text, *, client_ref=None):
        if self.fail_send:
            raise ApiError(503, "UNAVAILABLE", "try later")
        row = _msg(100 + len(self.rows), "2026-01-01T12:00:00", text, client_ref=client_ref)
        self.rows.append(row)
        return row

    def open_conversation_stream(self, conversation_id):
        if not self.streams:
            raise ApiError(0, "STREAM_FAILED", "refused")
        return self.streams.pop(0)


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class ThreadSyncTestCase(unittest.TestCase):
    def _sync(self, api, **kwargs):
        kwargs.setdefault("refresh_delay", 10.0)
        sync = ThreadSync(api, 1, user_id=2, **kwargs)
        self.addCleanup(sync.stop, 1.0)
        return sync

    def test_start_loads_page_and_marks_read(self):
        api = FakeApi([_msg(1, "2026-01-01T10:00:00"), _msg(2, "2026-01-01T10:00:01")])
        sync = self._sync(api)
        sync.start(stream=False)
        self.assertEqual(sync.thread.ids(), [1, 2])
        self.assertEqual(api.read_calls, 1)
        self.assertEqual(sync.cursor, "2026-01-01T10:00:01")

    def test_first_subscribe_catches_up_with_since_poll(self):
        api = FakeApi([_msg(1, "2026-01-01T10:00:00")])
        api.since_rows = [_msg(2, "2026-01-01T10:00:05")]
        api.since_cursor = "2026-01-01T10:00:05"
        sync = self._sync(api)
        sync.start(stream=False)

        sync.handle_event(SseEvent(event="subscribed", data={"channel": "messages:1", "seq": 7}))
        self.assertEqual(sync.subscriptions, 1)
        self.assertEqual(sync.thread.last_seq, 7)
        self.assertEqual(api.since_calls, 1)
        self.assertEqual(sync.thread.ids(), [1, 2])
        self.assertEqual(sync.cursor, "2026-01-01T10:00:05")
        self.assertFalse(sync.debouncer.pending)

    def test_change_events_apply_and_advance_cursor(self):
        api = FakeApi([_msg(1, "2026-01-01T10:00:00")])
        sync = self._sync(api)
        sync.start(stream=False)
        sync.thread.set_last_seq(3)
        sync.handle_event(SseEvent(event="change", data={"seq": 4, "event_type": "INSERT", "new": _msg(2, "2026-01-01T10:01:00")}, id="4"))
        sync.handle_event(SseEvent(event="heartbeat", data="heartbeat"))
        self.assertEqual(sync.thread.ids(), [1, 2])
        self.assertEqual(sync.cursor, "2026-01-01T10:01:00")

    def test_seq_gap_schedules_debounced_refresh(self):
        api = FakeApi([_msg(1, "2026-01-01T10:00:00")])
        sync = self._sync(api)
        sync.start(stream=False)
        sync.thread.set_last_seq(1)
        sync.handle_event(SseEvent(event="change", data={"seq": 5, "event_type": "INSERT", "new": _msg(2, "2026-01-01T10:01:00")}))
        self.assertTrue(sync.debouncer.pending)
        calls = api.list_calls
        self.assertTrue(sync.debouncer.flush())
        self.assertEqual(api.list_calls, calls + 1)

    def test_stream_end_degrades_then_resubscribe_recovers(self):
        api = FakeApi([_msg(1, "2026-01-01T10:00:00")])
        api.streams.append(FakeStream([SseEvent(event="subscribed", data={"channel": "messages:1", "seq": 0})]))
        sync = self._sync(api, poll_interval=0.02)
        sync.start(stream=False)

        self.assertTrue(sync.run_stream_once())
        self.assertFalse(sync.run_stream_once())

        sync.enter_degraded()
        self.assertTrue(sync.degraded)
        self.assertTrue(_wait_for(lambda: sync.polls >= 2))

        sync.handle_event(SseEvent(event="subscribed", data={"channel": "messages:1", "seq": 0}))
        self.assertFalse(sync.degraded)
        self.assertTrue(sync.debouncer.pending)
        self.assertEqual(sync.backoff, sync.backoff_initial)

        polls = sync.polls
        time.sleep(0.1)
        self.assertLessEqual(sync.polls, polls + 1)

    def test_background_stream_loop_backs_off_and_polls(self):
        api = FakeApi([_msg(1, "2026-01-01T10:00:00")])
        sync = self._sync(api, poll_interval=0.02, backoff_initial=0.01, backoff_max=0.04)
        sync.start(stream=True)
        self.assertTrue(_wait_for(lambda: sync.degraded and sync.polls >= 1))
        self.assertTrue(_wait_for(lambda: sync.backoff == 0.04))
        sync.stop(1.0)
        self.assertTrue(sync.stopped)
        self.assertFalse(sync.degraded)

    def test_poll_failure_is_tolerated(self):
        api = FakeApi([_msg(1, "2026-01-01T10:00:00")])
        sync = self._sync(api)
        sync.start(stream=False)
        api.fail_since = True
        self.assertEqual(sync.poll_once(), 0)
        self.assertEqual(sync.polls, 0)

    def test_poll_without_cursor_does_full_refresh(self):
        api = FakeApi()
        sync = self._sync(api)
        api.rows.append(_msg(1, "2026-01-01T10:00:00"))
        self.assertEqual(sync.poll_once(), 1)
        self.assertEqual(api.list_calls, 1)
        self.assertEqual(api.since_calls, 0)

    def test_send_confirms_or_marks_failed(self):
        api = FakeApi([_msg(1, "2026-01-01T10:00:00")])
        sync = self._sync(api)
        sync.start(stream=False)

        row = sync.send("see you at 3")
        self.assertEqual(sync.thread.ids(), [1, row["id"]])
        self.assertEqual(sync.cursor, "2026-01-01T12:00:00")

        api.fail_send = True
        with self.assertRaises(ApiError) as ctx:
            sync.send("this one fails")
        self.assertTrue(ctx.exception.retryable)
        failed = [m for m in sync.thread.messages() if m.get("failed")]
        self.assertEqual([m["message_text"] for m in failed], ["this one fails"])

    def test_load_older_pages_backwards(self):
        rows = [_msg(i, f"2026-01-01T10:00:{i:02d}") for i in range(1, 6)]
        api = FakeApi(rows)
        sync = self._sync(api, page_size=2)
        sync.start(stream=False)
        self.assertEqual(sync.thread.ids(), [4, 5])
        self.assertEqual(sync.load_older(), 2)
        self.assertEqual(sync.load_older(), 1)
        self.assertEqual(sync.thread.ids(), [1, 2, 3, 4, 5])
        self.assertEqual(sync.load_older(), 0)


class SseParsingTestCase(unittest.TestCase):
    def test_parse_frames_comments_and_multiline_data(self):
        lines = [
            "event: subscribed",
            'data: {"channel":"messages:1","seq":0}',
            "",
            ": heartbeat",
            "",
            "id: 1",
            "event: change",
            'data: {"seq":1,',
            'data: "event_type":"INSERT"}',
            "",
            "data: plain",
        ]
        events = list(parse_sse_lines(lines))
        self.assertEqual([e.event for e in events], ["subscribed", "heartbeat", "change", "message"])
        self.assertEqual(events[0].data, {"channel": "messages:1", "seq": 0})
        self.assertEqual(events[2].id, "1")
        self.assertEqual(events[2].data, {"seq": 1, "event_type": "INSERT"})
        self.assertEqual(events[3].data, "plain")


class _FakeResponse:
    def __init__(self, status_code, body=None, text="", lines=None):
        self.status_code = status_code
        self._body = body
        self.text = text
        self.content = b"x" if (body is not None or text) else b""
        self.lines = list(lines or [])
        self.closed = False

    def iter_lines(self, decode_unicode=False):
        return iter(self.lines)

    def close(self):
        self.closed = True

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class _FakeSession:
    def __init__(self, response=None, exc=None):
        self.headers = {}
        self.response = response
        self.exc = exc
        self.calls = []

    def request(self, **kwargs):
        self.calls.append(kwargs)
        if self.exc is not None:
            raise self.exc
        return self.response

    def get(self, url, **kwargs):
        self.calls.append(dict(kwargs, url=url))
        if self.exc is not None:
            raise self.exc
        return self.response


class MessagingApiTestCase(unittest.TestCase):
    def test_success_sets_auth_header_and_unwraps(self):
        session = _FakeSession(_FakeResponse(200, {"ok": True, "data": [{"id": 1}], "pagination": {"hasMore": False}}))
        api = MessagingApi("http://localhost:5000/", "tok", session=session)
        rows, pagination = api.list_messages(3, limit=10)
        self.assertEqual(rows, [{"id": 1}])
        self.assertEqual(pagination, {"hasMore": False})
        self.assertEqual(session.headers["Authorization"], "Bearer tok")
        self.assertEqual(session.calls[0]["url"], "http://localhost:5000/api/messages")
        self.assertEqual(session.calls[0]["params"], {"conversation_id": 3, "limit": 10, "offset": 0})

    def test_error_envelope_becomes_api_error(self):
        session = _FakeSession(_FakeResponse(403, {"ok": False, "error": "FORBIDDEN", "message": "Not a participant"}))
        api = MessagingApi("http://api", "tok", session=session)
        with self.assertRaises(ApiError) as ctx:
            api.send_message(1, "hi", client_ref="r1")
        self.assertEqual((ctx.exception.status_code, ctx.exception.code), (403, "FORBIDDEN"))
        self.assertFalse(ctx.exception.retryable)

    def test_non_json_error_and_network_failures(self):
        api = MessagingApi("http://api", "tok", session=_FakeSession(_FakeResponse(502, text="Bad Gateway")))
        with self.assertRaises(ApiError) as ctx:
            api.mark_read(1)
        self.assertEqual(ctx.exception.code, "HTTP_ERROR")
        self.assertTrue(ctx.exception.retryable)

        api = MessagingApi("http://api", "tok", session=_FakeSession(exc=requests.Timeout("slow")))
        with self.assertRaises(ApiError) as ctx:
            api.list_conversations()
        self.assertEqual((ctx.exception.status_code, ctx.exception.code), (0, "TIMEOUT"))

        api = MessagingApi("http://api", "tok", session=_FakeSession(exc=requests.ConnectionError("refused")))
        with self.assertRaises(ApiError) as ctx:
            api.messages_since(1, "2026-01-01T00:00:00")
        self.assertEqual(ctx.exception.code, "NETWORK_ERROR")

    def test_start_conversation_sends_context_and_first_message(self):
        session = _FakeSession(_FakeResponse(201, {"ok": True, "conversationId": 12, "created": True}))
        api = MessagingApi("http://api", "tok", session=session)
        body = api.start_conversation(7, listing_id=3, first_message="Still available?", client_ref="ref-9")
        self.assertEqual(body["conversationId"], 12)
        call = session.calls[0]
        self.assertEqual((call["method"], call["url"]), ("POST", "http://api/api/conversations"))
        self.assertEqual(call["json"], {"otherUserId": 7, "listingId": 3, "firstMessage": "Still available?", "clientRef": "ref-9"})

        api.start_conversation(8)
        self.assertEqual(session.calls[1]["json"], {"otherUserId": 8})

    def test_open_inbox_stream_reads_events(self):
        lines = ["event: subscribed", 'data: {"seq": 4}', "", ": heartbeat", "id: 5", "event: change", 'data: {"seq": 5, "table": "conversations"}', ""]
        response = _FakeResponse(200, lines=lines)
        session = _FakeSession(response)
        api = MessagingApi("http://api", "tok", session=session, stream_read_timeout=30)
        stream = api.open_inbox_stream()

        call = session.calls[0]
        self.assertEqual(call["url"], "http://api/api/realtime/inbox/stream")
        self.assertEqual(call["headers"], {"Accept": "text/event-stream"})
        self.assertTrue(call["stream"])
        self.assertEqual(call["timeout"], (10.0, 30.0))

        events = list(stream.events())
        self.assertEqual([e.event for e in events], ["subscribed", "heartbeat", "change"])
        self.assertEqual(events[2].id, "5")
        self.assertEqual(events[2].data["table"], "conversations")
        stream.close()
        self.assertTrue(response.closed)

    def test_rejected_stream_raises_and_closes(self):
        response = _FakeResponse(401)
        api = MessagingApi("http://api", "tok", session=_FakeSession(response))
        with self.assertRaises(ApiError) as ctx:
            api.open_inbox_stream()
        self.assertEqual((ctx.exception.status_code, ctx.exception.code), (401, "STREAM_REJECTED"))
        self.assertTrue(response.closed)


if __name__ == "__main__":
    unittest.main()
