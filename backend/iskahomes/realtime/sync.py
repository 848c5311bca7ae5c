from __future__ import annotations

import logging
import threading

from iskahomes.realtime.api_client import ApiError, SseEvent
from iskahomes.realtime.debounce import RefreshDebouncer
from iskahomes.realtime.thread_state import MessageThread

logger = logging.getLogger(__name__)

BACKOFF_INITIAL_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 30.0


class ThreadSync:
    """Keeps a MessageThread current from the SSE stream, falling back to polling.

    The stream runs in a background thread. While it is down the sync is
    ``degraded``: a poller fetches ``since=cursor`` every ``poll_interval``
    seconds and reconnects back off from 1s doubling to 30s. A successful
    resubscribe stops the poller and schedules one debounced full refresh.
    """

    def __init__(
        self,
        api,
        conversation_id: int,
        *,
        user_id: int | None = None,
        page_size: int = 50,
        poll_interval: float = 5.0,
        refresh_delay: float = 0.5,
        backoff_initial: float = BACKOFF_INITIAL_SECONDS,
        backoff_max: float = BACKOFF_MAX_SECONDS,
    ):
        self.api = api
        self.conversation_id = int(conversation_id)
        self.user_id = user_id
        self.page_size = int(page_size)
        self.poll_interval = float(poll_interval)
        self.backoff_initial = float(backoff_initial)
        self.backoff_max = float(backoff_max)
        self.backoff = self.backoff_initial

        self.thread = MessageThread(self.conversation_id, on_gap=self._on_gap)
        self.debouncer = RefreshDebouncer(refresh_delay, self.refresh)
        self.cursor: str | None = None
        self.degraded = False
        self.subscriptions = 0
        self.polls = 0

        self._loaded = 0
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._stream = None
        self._stream_thread: threading.Thread | None = None
        self._poll_thread: threading.Thread | None = None

    # -- lifecycle -------------------------------------------------------

    def start(self, *, stream: bool = True) -> None:
        self._stop.clear()
        self.refresh()
        try:
            self.api.mark_read(self.conversation_id)
        except ApiError as exc:
            logger.warning("mark_read_failed conversation=%s err=%s", self.conversation_id, exc)
        if stream:
            self._stream_thread = threading.Thread(target=self._stream_loop, name=f"thread-sync-{self.conversation_id}", daemon=True)
            self._stream_thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self.debouncer.cancel()
        stream = self._stream
        if stream is not None:
            stream.close()
        with self._lock:
            self.degraded = False
        for t in (self._stream_thread, self._poll_thread):
            if t is not None and t is not threading.current_thread():
                t.join(timeout)
        self._stream_thread = None
        self._poll_thread = None

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # -- fetching --------------------------------------------------------

    def _advance_cursor(self, stamp: str | None) -> None:
        if stamp and (self.cursor is None or str(stamp) > self.cursor):
            self.cursor = str(stamp)

    def refresh(self) -> None:
        rows, pagination = self.api.list_messages(self.conversation_id, limit=self.page_size, offset=0)
        self.thread.load_page(rows, has_more=bool(pagination.get("hasMore")))
        self._loaded = len(rows)
        self._advance_cursor(self.thread.latest_timestamp())

    def load_older(self) -> int:
        if not self.thread.has_more:
            return 0
        rows, pagination = self.api.list_messages(self.conversation_id, limit=self.page_size, offset=self._loaded)
        self.thread.load_page(rows, older=True, has_more=bool(pagination.get("hasMore")))
        self._loaded += len(rows)
        return len(rows)

    def poll_once(self) -> int:
        since = self.cursor or self.thread.latest_timestamp()
        try:
            if since is None:
                self.refresh()
                return len(self.thread)
            rows, cursor = self.api.messages_since(self.conversation_id, since)
        except ApiError as exc:
            logger.warning("poll_failed conversation=%s err=%s", self.conversation_id, exc)
            return 0
        self.polls += 1
        merged = self.thread.merge_incremental(rows)
        self._advance_cursor(cursor)
        return merged

    def send(self, text: str) -> dict:
        ref = self.thread.add_optimistic(text, self.user_id)
        try:
            row = self.api.send_message(self.conversation_id, text, client_ref=ref)
        except ApiError:
            self.thread.fail(ref)
            raise
        self.thread.confirm(ref, row)
        self._advance_cursor(row.get("updated_at") or row.get("created_at"))
        return row

    # -- stream ----------------------------------------------------------

    def handle_event(self, event: SseEvent) -> None:
        if event.event == "subscribed":
            self._on_subscribed(event.data if isinstance(event.data, dict) else {})
        elif event.event == "change" and isinstance(event.data, dict):
            self.thread.apply_event(event.data)
            new = event.data.get("new") or {}
            self._advance_cursor(new.get("updated_at") or new.get("created_at"))

    def _on_subscribed(self, hello: dict) -> None:
        self.thread.set_last_seq(hello.get("seq"))
        self.backoff = self.backoff_initial
        self.subscriptions += 1
        with self._lock:
            was_degraded = self.degraded
            self.degraded = False
        if was_degraded or self.subscriptions > 1:
            self.debouncer.trigger()
        elif self.cursor is not None:
            # First subscribe: pick up anything sent since the initial page.
            self.poll_once()

    def _on_gap(self, last_seq: int, seq: int) -> None:
        logger.info("realtime_seq_gap conversation=%s last=%s got=%s", self.conversation_id, last_seq, seq)
        self.debouncer.trigger()

    def run_stream_once(self) -> bool:
        """Consume one stream connection until it ends. True if it subscribed."""
        subscribed_before = self.subscriptions
        try:
            stream = self.api.open_conversation_stream(self.conversation_id)
        except ApiError as exc:
            logger.warning("stream_open_failed conversation=%s err=%s", self.conversation_id, exc)
            return False
        self._stream = stream
        try:
            for event in stream.events():
                if self._stop.is_set():
                    break
                self.handle_event(event)
        except ApiError as exc:
            logger.warning("stream_failed conversation=%s err=%s", self.conversation_id, exc)
        finally:
            stream.close()
            self._stream = None
        return self.subscriptions > subscribed_before

    def _stream_loop(self) -> None:
        while not self._stop.is_set():
            self.run_stream_once()
            if self._stop.is_set():
                break
            self.enter_degraded()
            if self._stop.wait(self.backoff):
                break
            self.backoff = min(self.backoff * 2, self.backoff_max)

    # -- degraded mode ---------------------------------------------------

    def enter_degraded(self) -> None:
        with self._lock:
            if self.degraded:
                return
            self.degraded = True
            alive = self._poll_thread is not None and self._poll_thread.is_alive()
        logger.info("realtime_degraded conversation=%s", self.conversation_id)
        if not alive:
            self._poll_thread = threading.Thread(target=self._poll_loop, name=f"thread-poll-{self.conversation_id}", daemon=True)
            self._poll_thread.start()

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            with self._lock:
                if not self.degraded:
                    return
            self.poll_once()
            if self._stop.wait(self.poll_interval):
                return
