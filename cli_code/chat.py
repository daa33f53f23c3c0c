"""Streaming chat client: one POST per turn, NDJSON events in, callbacks out.

Event stream (one JSON object per line):
  "thinking": replaces the current reasoning text
  "content": incremental answer text (possibly a JSON envelope)
  "tool_call": one provider-shaped tool call
  "final": complete message with metadata, at most once
  "done": end of turn
  "error": server-side failure, aborts the turn
"""

import codecs
import json
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import requests

from .config import Config
from .errors import ChatError, ChatErrorKind
from .logger import get_logger
from .models import ChatRequest, FunctionCall, MessageMetadata, UsageMetadata, parse_function_call

_log = get_logger(__name__)

__all__ = [
    "ChatClient", "CancelToken", "StreamCallbacks", "StreamSnapshot",
    "StreamReducer", "iter_ndjson", "extract_response", "build_final",
]

STREAM_PATH = "/chat/stream"
CONNECT_TIMEOUT = 15
READ_TIMEOUT = 300
MAX_RETRIES = 1
MAX_RETRIES_MESSAGE = "Max retries reached for chat. Kindly login again."

Refresher = Callable[[Any], Optional[str]]


class CancelToken:
    """Cancellation scoped to a single turn.

    Cancelling closes the attached HTTP response so a blocked read returns.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._response: Optional[requests.Response] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            self._event.set()
            response, self._response = self._response, None
        if response is not None:
            response.close()

    def attach(self, response: requests.Response):
        with self._lock:
            if not self._event.is_set():
                self._response = response
                return
        response.close()

    def detach(self):
        with self._lock:
            self._response = None


@dataclass(frozen=True)
class StreamSnapshot:
    """Last known state of a turn, handed to ``on_done``."""
    content: str = ""
    thinking: str = ""
    tool_calls: Tuple[FunctionCall, ...] = ()


class StreamCallbacks:
    """Receiver for stream observations. Override what you need."""

    def on_thinking(self, thinking: str) -> None:
        pass

    def on_content(self, content: str) -> None:
        pass

    def on_tool_calls(self, tool_calls: List[FunctionCall]) -> None:
        pass

    def on_final(self, content: str, metadata: MessageMetadata) -> None:
        pass

    def on_done(self, snapshot: StreamSnapshot) -> None:
        pass


# ── Decoding ───────────────────────────────────────


def _parse_line(line: str) -> Dict[str, Any]:
    try:
        event = json.loads(line)
    except json.JSONDecodeError as e:
        raise ChatError(ChatErrorKind.UNKNOWN, f"Failed to parse server message: {line[:200]}") from e
    if not isinstance(event, dict):
        raise ChatError(ChatErrorKind.UNKNOWN, f"Unexpected server message: {line[:200]}")
    return event


def iter_ndjson(chunks: Iterable[Union[bytes, str]],
                cancel: Optional[CancelToken] = None) -> Iterator[Dict[str, Any]]:
    """Yield one event per complete line, buffering partial lines across chunks."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    for chunk in chunks:
        if cancel is not None and cancel.cancelled:
            return
        if not chunk:
            continue
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            if line.strip():
                yield _parse_line(line)
            if cancel is not None and cancel.cancelled:
                return
    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        yield _parse_line(buffer)


def extract_response(text: str) -> str:
    """Unwrap ``{"response": ...}`` / ``{"text": ...}`` envelopes, else return ``text``."""
    try:
        obj = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text
    if not isinstance(obj, dict):
        return text
    value = obj.get("response") or obj.get("text")
    if not value:
        return text
    return value if isinstance(value, str) else json.dumps(value)


def _first(items: Any) -> Dict[str, Any]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def build_final(event: Dict[str, Any], accumulated: str) -> Tuple[str, MessageMetadata]:
    """Build the final message body and metadata from a ``final`` event.

    A ``fullMessage`` content-block list is preferred; otherwise the
    ``summary`` is used. Thinking-signature precedence for the summary path:
    ``summary.thinkingSignature``, ``summary.toolCalls[0].thoughtSignature``,
    ``summary.content[0].thoughtSignature``.
    """
    finish_reason = event.get("finishReason")
    usage = UsageMetadata.from_dict(event.get("usageMetadata"))

    full_message = event.get("fullMessage")
    blocks = full_message.get("content") if isinstance(full_message, dict) else None
    if isinstance(blocks, list) and blocks:
        texts: List[str] = []
        thinking: List[str] = []
        signature: Optional[str] = None
        tool_calls: List[FunctionCall] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            kind = block.get("type")
            if kind == "text":
                texts.append(block.get("text") or "")
            elif kind == "thinking":
                thinking.append(block.get("thinking") or "")
                signature = block.get("signature") or signature
            elif kind == "tool_use":
                tool_calls.append(parse_function_call(block))
        body = "".join(texts) or extract_response(accumulated)
        return body, MessageMetadata(
            thinking_content="".join(thinking),
            thinking_signature=signature or event.get("thinkingSignature"),
            tool_calls=tuple(tool_calls),
            finish_reason=finish_reason,
            usage_metadata=usage,
        )

    summary = event.get("summary") if isinstance(event.get("summary"), dict) else {}
    raw_calls = summary.get("toolCalls") or []
    signature = (
        summary.get("thinkingSignature")
        or _first(raw_calls).get("thoughtSignature")
        or _first(summary.get("content")).get("thoughtSignature")
    )
    return extract_response(accumulated), MessageMetadata(
        thinking_content=summary.get("thinking") or "",
        thinking_signature=signature or None,
        tool_calls=tuple(parse_function_call(tc) for tc in raw_calls),
        finish_reason=finish_reason,
        usage_metadata=usage,
    )


class StreamReducer:
    """Fold one turn's events into callbacks. Fresh instance per attempt."""

    def __init__(self, callbacks: StreamCallbacks):
        self.callbacks = callbacks
        self.content = ""
        self.thinking = ""
        self.tool_calls: List[FunctionCall] = []
        self._accumulated = ""
        self.final_sent = False
        self.done = False
        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "thinking": self._on_thinking,
            "content": self._on_content,
            "tool_call": self._on_tool_call,
            "final": self._on_final,
            "done": self._on_done,
            "error": self._on_error,
        }

    def snapshot(self) -> StreamSnapshot:
        return StreamSnapshot(self.content, self.thinking, tuple(self.tool_calls))

    def feed(self, event: Dict[str, Any]) -> None:
        kind = event.get("type")
        handler = self._handlers.get(kind)
        if handler is None:
            _log.warning("Unknown event type: %s", kind)
            return
        handler(event)

    def finish(self) -> None:
        """Close a stream that ended without a ``done`` event."""
        if not self.done:
            _log.warning("Stream ended without a done event")
            self._on_done({})

    def _on_thinking(self, event):
        self.thinking = event.get("content") or ""
        self.callbacks.on_thinking(self.thinking)

    def _on_content(self, event):
        self._accumulated += event.get("content") or ""
        self.content = extract_response(self._accumulated)
        self.callbacks.on_content(self.content)

    def _on_tool_call(self, event):
        self.tool_calls.append(parse_function_call(event.get("toolCall")))
        self.callbacks.on_tool_calls(list(self.tool_calls))

    def _on_final(self, event):
        if self.final_sent:
            _log.warning("Ignoring duplicate final event")
            return
        self.final_sent = True
        content, metadata = build_final(event, self._accumulated)
        self.callbacks.on_final(content, metadata)

    def _on_done(self, event):
        self.done = True
        self.callbacks.on_done(self.snapshot())

    def _on_error(self, event):
        raise ChatError(ChatErrorKind.UNKNOWN, event.get("error") or "Unknown stream error")


# ── Client ─────────────────────────────────────────


class ChatClient:
    """Send a turn to ``{worker_url}/chat/stream`` and stream the answer back."""

    def __init__(self, config: Config, refresher: Optional[Refresher] = None,
                 session: Optional[requests.Session] = None):
        self.config = config
        self.refresher = refresher
        self._session = session or requests.Session()

    def send(self, request: ChatRequest, callbacks: StreamCallbacks,
             cancel: Optional[CancelToken] = None) -> None:
        """Run one turn. Raises ``ChatError`` on failure; returns quietly if cancelled."""
        cancel = cancel or CancelToken()
        if request.api_key is None:
            request = replace(request, api_key=self.config.api_key_for(request.provider))

        attempt = 0
        while True:
            if cancel.cancelled:
                return
            try:
                if self._attempt(request, callbacks, cancel, attempt):
                    return
            except ChatError:
                raise
            except requests.RequestException as e:
                if cancel.cancelled:
                    return
                raise ChatError(ChatErrorKind.NETWORK_ERROR, f"Network error: {e}") from e
            except Exception as e:
                if cancel.cancelled:
                    return
                raise ChatError(ChatErrorKind.UNKNOWN, f"{type(e).__name__}: {e}") from e
            attempt += 1

    def _attempt(self, request: ChatRequest, callbacks: StreamCallbacks,
                 cancel: CancelToken, attempt: int) -> bool:
        """One HTTP round trip. ``False`` means: refreshed, try again."""
        access_token = self.config.access_token
        if not access_token:
            raise ChatError(ChatErrorKind.AUTH_ERROR, "No access token found")

        response = self._session.post(
            f"{self.config.worker_url}{STREAM_PATH}",
            json={"chat": request.to_payload()},
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {access_token}",
            },
            stream=True,
            timeout=(CONNECT_TIMEOUT, READ_TIMEOUT),
        )
        cancel.attach(response)
        try:
            if not response.ok:
                return self._handle_http_error(response, attempt)
            self._consume(response, callbacks, cancel)
            return True
        finally:
            cancel.detach()
            response.close()

    def _handle_http_error(self, response: requests.Response, attempt: int) -> bool:
        error_data = _json_body(response)
        error = ChatError.from_status(response.status_code, _error_message(response.status_code, error_data))
        _log.error("Chat request failed: %s", error)

        has_payload = isinstance(error_data, dict) and bool(error_data.get("error"))
        if error.kind is not ChatErrorKind.AUTH_ERROR or not has_payload or self.refresher is None:
            raise error
        if attempt >= MAX_RETRIES:
            _log.error(MAX_RETRIES_MESSAGE)
            raise ChatError(ChatErrorKind.AUTH_ERROR, MAX_RETRIES_MESSAGE, status=error.status)
        if not self.refresher(error_data):
            raise error
        _log.info("Access token refreshed, retrying (attempt %d)", attempt + 1)
        return False

    def _consume(self, response: requests.Response, callbacks: StreamCallbacks,
                 cancel: CancelToken) -> None:
        reducer = StreamReducer(callbacks)
        for event in iter_ndjson(response.iter_content(chunk_size=None), cancel):
            if cancel.cancelled:
                return
            reducer.feed(event)
            if reducer.done:
                return
        if not cancel.cancelled:
            reducer.finish()

    # ── Catalog lookups ──

    def get_models(self) -> List[Dict[str, Any]]:
        try:
            resp = self._session.get(f"{self.config.worker_url}/models", timeout=CONNECT_TIMEOUT)
            resp.raise_for_status()
            return list(resp.json().get("models") or [])
        except (requests.RequestException, ValueError, AttributeError) as e:
            _log.error("Error fetching models: %s", e)
            return []

    def get_user(self) -> Optional[Dict[str, Any]]:
        if not self.config.access_token:
            return None
        try:
            resp = self._session.get(
                f"{self.config.worker_url}/user",
                headers={"Authorization": f"Bearer {self.config.access_token}"},
                timeout=CONNECT_TIMEOUT,
            )
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            _log.error("Error fetching user: %s", e)
            return None


def _json_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_message(status: int, error_data: Any) -> str:
    message = f"HTTP error! status: {status}"
    if isinstance(error_data, dict):
        error = error_data.get("error")
        detail = error.get("message") if isinstance(error, dict) else error
        if isinstance(detail, str) and detail:
            message += f" ({detail})"
    return message
