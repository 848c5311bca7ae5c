from __future__ import annotations

import threading
import uuid
from typing import Any, Callable

from iskahomes.utils.clock import utcnow


def _event_dict(event) -> dict:
    if isinstance(event, dict):
        return event
    return event.to_dict()


def _message_key(row: dict) -> tuple[str, int]:
    raw_id = row.get("id")
    return str(row.get("created_at") or ""), raw_id if isinstance(raw_id, int) else 0


def new_client_ref() -> str:
    return uuid.uuid4().hex


class MessageThread:
    """Ordered, de-duplicated view of one conversation's messages.

    Server rows, optimistic sends and change events all merge here. Entries
    are kept sorted by ``(created_at, id)``; optimistic entries carry a
    ``temp-<client_ref>`` id until confirmed.
    """

    def __init__(self, conversation_id: int, *, on_gap: Callable[[int, int], None] | None = None):
        self.conversation_id = int(conversation_id)
        self.on_gap = on_gap
        self.last_seq: int | None = None
        self.needs_resync = False
        self.has_more = False
        self._items: list[dict] = []
        self._lock = threading.RLock()

    # -- reads -----------------------------------------------------------

    def messages(self) -> list[dict]:
        with self._lock:
            return [dict(m) for m in self._items]

    def ids(self) -> list:
        with self._lock:
            return [m.get("id") for m in self._items]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def latest_timestamp(self) -> str | None:
        """Newest created_at/updated_at among confirmed rows; the poll cursor."""
        with self._lock:
            stamps = []
            for m in self._items:
                if m.get("pending") or m.get("failed"):
                    continue
                for key in ("updated_at", "created_at"):
                    if m.get(key):
                        stamps.append(str(m[key]))
            return max(stamps) if stamps else None

    # -- internals -------------------------------------------------------

    def _index_of(self, message_id) -> int | None:
        for i, m in enumerate(self._items):
            if m.get("id") == message_id:
                return i
        return None

    def _pending_index(self, client_ref) -> int | None:
        if not client_ref:
            return None
        for i, m in enumerate(self._items):
            if m.get("client_ref") == client_ref and (m.get("pending") or m.get("failed")):
                return i
        return None

    def _sort(self) -> None:
        self._items.sort(key=_message_key)

    def _upsert(self, row: dict) -> None:
        if row.get("is_deleted"):
            self._remove(row.get("id"))
            return
        pending_at = self._pending_index(row.get("client_ref"))
        existing_at = self._index_of(row.get("id"))
        if pending_at is not None:
            self._items.pop(pending_at)
            existing_at = self._index_of(row.get("id"))
        if existing_at is not None:
            merged = dict(self._items[existing_at])
            merged.update(row)
            self._items[existing_at] = merged
        else:
            self._items.append(dict(row))
        self._sort()

    def _remove(self, message_id) -> bool:
        at = self._index_of(message_id)
        if at is None:
            return False
        self._items.pop(at)
        return True

    # -- writes ----------------------------------------------------------

    def load_page(self, messages: list[dict], *, older: bool = False, has_more: bool | None = None) -> None:
        with self._lock:
            if older:
                known = {m.get("id") for m in self._items}
                for row in messages or []:
                    if row.get("id") in known or row.get("is_deleted"):
                        continue
                    self._items.append(dict(row))
                    known.add(row.get("id"))
            else:
                unsent = [m for m in self._items if m.get("pending") or m.get("failed")]
                self._items = []
                for row in messages or []:
                    if row.get("is_deleted") or self._index_of(row.get("id")) is not None:
                        continue
                    self._items.append(dict(row))
                server_refs = {m.get("client_ref") for m in self._items if m.get("client_ref")}
                self._items.extend(m for m in unsent if m.get("client_ref") not in server_refs)
                self.needs_resync = False
            if has_more is not None:
                self.has_more = bool(has_more)
            self._sort()

    def add_optimistic(self, text: str, sender_id: int | None = None, *, client_ref: str | None = None) -> str:
        ref = client_ref or new_client_ref()
        entry = {
            "id": f"temp-{ref}",
            "conversation_id": self.conversation_id,
            "sender_id": sender_id,
            "message_text": text,
            "message_type": "text",
            "client_ref": ref,
            "is_deleted": False,
            "created_at": utcnow().isoformat(),
            "pending": True,
            "failed": False,
        }
        with self._lock:
            self._items.append(entry)
            self._sort()
        return ref

    def confirm(self, client_ref: str, server_message: dict) -> None:
        row = dict(server_message)
        row.setdefault("client_ref", client_ref)
        with self._lock:
            at = self._pending_index(client_ref)
            if at is not None:
                self._items.pop(at)
            self._upsert(row)

    def fail(self, client_ref: str) -> bool:
        with self._lock:
            at = self._pending_index(client_ref)
            if at is None:
                return False
            self._items[at] = {**self._items[at], "pending": False, "failed": True}
            return True

    def set_last_seq(self, seq: int | None) -> None:
        with self._lock:
            self.last_seq = int(seq) if seq is not None else None

    def apply_event(self, event) -> bool:
        """Apply one change event; returns False when it was ignored."""
        data = _event_dict(event)
        seq = data.get("seq")
        gap = None
        with self._lock:
            if seq is not None:
                seq = int(seq)
                if self.last_seq is not None:
                    if seq <= self.last_seq:
                        return False
                    if seq > self.last_seq + 1:
                        gap = (self.last_seq, seq)
                        self.needs_resync = True
                self.last_seq = seq

            kind = str(data.get("event_type") or "").upper()
            new = data.get("new") or {}
            old = data.get("old") or {}
            if kind == "INSERT" or kind == "UPDATE":
                if new:
                    self._upsert(new)
            elif kind == "DELETE":
                self._remove(old.get("id", new.get("id")))
        if gap is not None and self.on_gap is not None:
            self.on_gap(*gap)
        return True

    def merge_incremental(self, rows: list[dict]) -> int:
        with self._lock:
            for row in rows or []:
                self._upsert(row)
            return len(rows or [])


class ConversationInbox:
    """Conversation list for one user, newest activity first."""

    def __init__(self, user_id: int):
        self.user_id = int(user_id)
        self.last_seq: int | None = None
        self._rows: dict[int, dict] = {}
        self._lock = threading.RLock()

    def unread_for(self, row: dict) -> int:
        if row.get("user1_id") == self.user_id:
            return int(row.get("user1_unread_count") or 0)
        if row.get("user2_id") == self.user_id:
            return int(row.get("user2_unread_count") or 0)
        return int(row.get("my_unread_count") or 0)

    def load(self, rows: list[dict]) -> None:
        with self._lock:
            self._rows = {}
            for row in rows or []:
                self.upsert(row)

    def upsert(self, row: dict) -> None:
        if row.get("id") is None:
            return
        with self._lock:
            cid = int(row["id"])
            merged = {**self._rows.get(cid, {}), **row}
            merged["my_unread_count"] = self.unread_for(merged)
            self._rows[cid] = merged

    def remove(self, conversation_id) -> bool:
        with self._lock:
            return self._rows.pop(int(conversation_id), None) is not None

    def apply_event(self, event) -> bool:
        data = _event_dict(event)
        seq = data.get("seq")
        with self._lock:
            if seq is not None:
                if self.last_seq is not None and int(seq) <= self.last_seq:
                    return False
                self.last_seq = int(seq)
            kind = str(data.get("event_type") or "").upper()
            if kind == "DELETE":
                old = data.get("old") or {}
                if old.get("id") is not None:
                    self.remove(old["id"])
            elif data.get("new"):
                self.upsert(data["new"])
        return True

    def conversations(self) -> list[dict]:
        with self._lock:
            rows = sorted(self._rows.values(), key=lambda r: int(r.get("id") or 0), reverse=True)
            rows.sort(key=lambda r: str(r.get("last_message_at") or ""), reverse=True)
            return [dict(r) for r in rows]

    def get(self, conversation_id) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(int(conversation_id))
            return dict(row) if row else None

    @property
    def total_unread(self) -> int:
        with self._lock:
            return sum(int(r.get("my_unread_count") or 0) for r in self._rows.values())
