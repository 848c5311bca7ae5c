from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

import requests


class ApiError(RuntimeError):
    """Raised for failed API calls, carrying the server's error envelope."""

    def __init__(self, status_code: int, code: str = "", message: str = ""):
        self.status_code = int(status_code)
        self.code = (code or "").strip() or "HTTP_ERROR"
        self.message = (message or "").strip() or f"HTTP {self.status_code}"
        super().__init__(f"{self.code} ({self.status_code}): {self.message}")

    @property
    def retryable(self) -> bool:
        return self.status_code == 0 or self.status_code == 429 or self.status_code >= 500


@dataclass(frozen=True)
class SseEvent:
    event: str
    data: Any
    id: str | None = None


def _decode(raw: str):
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_sse_lines(lines: Iterable[str]) -> Iterator[SseEvent]:
    """Turn raw text/event-stream lines into events. Comment lines yield ``heartbeat``."""
    event = ""
    data: list[str] = []
    event_id = None
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        line = line.rstrip("\r")
        if line == "":
            if data:
                yield SseEvent(event=event or "message", data=_decode("\n".join(data)), id=event_id)
            event, data, event_id = "", [], None
            continue
        if line.startswith(":"):
            yield SseEvent(event="heartbeat", data=line[1:].strip())
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
        elif field == "id":
            event_id = value
    if data:
        yield SseEvent(event=event or "message", data=_decode("\n".join(data)), id=event_id)


class EventStream:
    def __init__(self, response: requests.Response):
        self.response = response
        self.closed = False

    def events(self) -> Iterator[SseEvent]:
        try:
            yield from parse_sse_lines(self.response.iter_lines(decode_unicode=True))
        except requests.RequestException as exc:
            if self.closed:
                return
            raise ApiError(0, "STREAM_FAILED", str(exc)) from exc

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.response.close()


class MessagingApi:
    def __init__(self, base_url: str, token: str, *, timeout: float = 10.0, stream_read_timeout: float = 45.0, session: requests.Session | None = None):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = float(timeout)
        self.stream_read_timeout = float(stream_read_timeout)
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {token}", "Accept": "application/json"})

    def _request(self, method: str, path: str, *, params: dict | None = None, json_body: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method=method, url=url, params=params, json=json_body, timeout=self.timeout)
        except requests.Timeout as exc:
            raise ApiError(0, "TIMEOUT", f"{method} {path} timed out") from exc
        except requests.RequestException as exc:
            raise ApiError(0, "NETWORK_ERROR", str(exc)) from exc
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"message": response.text[:300]}
        if not (200 <= int(response.status_code) < 300):
            body = body if isinstance(body, dict) else {}
            raise ApiError(int(response.status_code), str(body.get("error") or ""), str(body.get("message") or ""))
        return body if isinstance(body, dict) else {"data": body}

    # -- conversations ---------------------------------------------------

    def list_conversations(self, *, limit: int = 20, offset: int = 0) -> tuple[list[dict], dict]:
        body = self._request("GET", "/api/conversations", params={"limit": limit, "offset": offset})
        return list(body.get("data") or []), dict(body.get("pagination") or {})

    def start_conversation(self, other_user_id: int, *, listing_id: int | None = None, first_message: str | None = None, client_ref: str | None = None) -> dict:
        payload: dict[str, Any] = {"otherUserId": other_user_id}
        if listing_id is not None:
            payload["listingId"] = listing_id
        if first_message:
            payload["firstMessage"] = first_message
            payload["clientRef"] = client_ref
        return self._request("POST", "/api/conversations", json_body=payload)

    def mark_read(self, conversation_id: int) -> int:
        body = self._request("POST", f"/api/conversations/{int(conversation_id)}/read")
        return int(body.get("marked") or 0)

    # -- messages --------------------------------------------------------

    def list_messages(self, conversation_id: int, *, limit: int = 50, offset: int = 0) -> tuple[list[dict], dict]:
        body = self._request("GET", "/api/messages", params={"conversation_id": conversation_id, "limit": limit, "offset": offset})
        return list(body.get("data") or []), dict(body.get("pagination") or {})

    def messages_since(self, conversation_id: int, since: str) -> tuple[list[dict], str | None]:
        body = self._request("GET", "/api/messages", params={"conversation_id": conversation_id, "since": since})
        return list(body.get("data") or []), body.get("cursor")

    def send_message(self, conversation_id: int, text: str, *, client_ref: str | None = None) -> dict:
        payload = {"conversationId": conversation_id, "messageText": text, "clientRef": client_ref}
        body = self._request("POST", "/api/messages", json_body=payload)
        return dict(body.get("data") or {})

    # -- streams ---------------------------------------------------------

    def _open_stream(self, path: str) -> EventStream:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(
                url,
                headers={"Accept": "text/event-stream"},
                stream=True,
                timeout=(self.timeout, self.stream_read_timeout),
            )
        except requests.RequestException as exc:
            raise ApiError(0, "STREAM_FAILED", str(exc)) from exc
        if int(response.status_code) != 200:
            status = int(response.status_code)
            response.close()
            raise ApiError(status, "STREAM_REJECTED", f"stream returned HTTP {status}")
        return EventStream(response)

    def open_conversation_stream(self, conversation_id: int) -> EventStream:
        return self._open_stream(f"/api/realtime/conversations/{int(conversation_id)}/stream")

    def open_inbox_stream(self) -> EventStream:
        return self._open_stream("/api/realtime/inbox/stream")
